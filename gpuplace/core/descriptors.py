"""
Processor and memory space descriptors.

A processor names something that can run a task; a memory space names
where bytes live. For accelerators the two are a bijection over the same
(worker, device, uuid) triple, kept as separate types so that inspecting a
placement never implies the right to execute there.

Descriptors are plain values: compare them with ``==``, never ``is``.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class HostProcessor:
    """The CPU of one worker process."""

    owner: int

    def __repr__(self) -> str:
        return f"HostProcessor(worker {self.owner})"


@dataclass(frozen=True)
class HostMemorySpace:
    """The RAM of one worker process."""

    owner: int

    def __repr__(self) -> str:
        return f"HostMemorySpace(worker {self.owner})"


@dataclass(frozen=True)
class DeviceProcessor:
    """A single accelerator device as a schedulable execution unit."""

    owner: int
    device: int
    device_uuid: UUID

    def __repr__(self) -> str:
        return f"DeviceProcessor(worker {self.owner}, device {self.device}, uuid {self.device_uuid})"


@dataclass(frozen=True)
class DeviceMemorySpace:
    """The memory of a single accelerator device."""

    owner: int
    device: int
    device_uuid: UUID

    def __repr__(self) -> str:
        return (
            f"DeviceMemorySpace(worker {self.owner}, device {self.device}, uuid {self.device_uuid})"
        )


Processor = HostProcessor | DeviceProcessor
MemorySpace = HostMemorySpace | DeviceMemorySpace
Descriptor = Processor | MemorySpace


def proc_to_space(proc: DeviceProcessor) -> DeviceMemorySpace:
    return DeviceMemorySpace(proc.owner, proc.device, proc.device_uuid)


def space_to_proc(space: DeviceMemorySpace) -> DeviceProcessor:
    return DeviceProcessor(space.owner, space.device, space.device_uuid)


def as_space(x: Descriptor) -> MemorySpace:
    """Get the memory space a descriptor refers to."""
    if isinstance(x, DeviceProcessor):
        return proc_to_space(x)
    if isinstance(x, HostProcessor):
        return HostMemorySpace(x.owner)
    if isinstance(x, (HostMemorySpace, DeviceMemorySpace)):
        return x
    raise TypeError(f"Not a processor or memory space: {x!r}")


def as_processor(x: Descriptor) -> Processor:
    """Get the processor a descriptor refers to."""
    if isinstance(x, DeviceMemorySpace):
        return space_to_proc(x)
    if isinstance(x, HostMemorySpace):
        return HostProcessor(x.owner)
    if isinstance(x, (HostProcessor, DeviceProcessor)):
        return x
    raise TypeError(f"Not a processor or memory space: {x!r}")


def memory_spaces(proc: Processor) -> set[MemorySpace]:
    """Get the memory spaces a processor can address directly."""
    return {as_space(proc)}


def processors(space: MemorySpace) -> set[Processor]:
    """Get the processors that can address a memory space directly."""
    return {as_processor(space)}


def root_worker_id(x: Descriptor) -> int:
    """Get the id of the worker process that owns a descriptor."""
    return x.owner


def parent(proc: DeviceProcessor) -> HostProcessor:
    """Get the host processor of the worker owning ``proc``."""
    return HostProcessor(proc.owner)


def is_device(x: object) -> bool:
    return isinstance(x, (DeviceProcessor, DeviceMemorySpace))


def is_host(x: object) -> bool:
    return isinstance(x, (HostProcessor, HostMemorySpace))


def short_name(proc: Processor) -> str:
    """Compact label for logs and progress displays."""
    if isinstance(proc, DeviceProcessor):
        return f"W: {proc.owner}, GPU: {proc.device}"
    return f"W: {proc.owner}, CPU"
