"""
Driver base classes and interfaces.

Defines the abstract interface every native device driver implements:
device enumeration, per-device contexts and streams, events, allocation,
copies and inter-process memory handles.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any
from uuid import UUID

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray


class DriverType(Enum):
    """Type of native device driver."""

    CUDA = auto()
    EMULATED = auto()


class AllocationIntent(Enum):
    """Abstract allocation request resolved to a native routine per driver."""

    UNDEF = auto()
    ZEROS = auto()
    ONES = auto()
    RAND = auto()
    RANDN = auto()


@dataclass(frozen=True)
class DeviceInfo:
    """A locally visible accelerator."""

    ordinal: int
    uuid: UUID
    name: str
    handle: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class IpcMemHandle:
    """
    Exported inter-process handle for a device allocation.

    Plain data only, so it can travel to another worker on the same node.
    """

    driver: str
    device_uuid: UUID
    payload: bytes
    shape: tuple[int, ...]
    dtype: str
    offset: int = 0  # Byte offset of the array inside the exported allocation

    @property
    def nbytes(self) -> int:
        """Size of the referenced array in bytes."""
        count = 1
        for dim in self.shape:
            count *= dim
        return count * np.dtype(self.dtype).itemsize


Allocator = Callable[[tuple[int, ...], "DTypeLike"], Any]


class Driver(ABC):
    """
    Abstract base class for native device drivers.

    Every operation that enqueues device work does so on the calling
    thread's current stream, set through ``make_current``.
    """

    @property
    @abstractmethod
    def driver_type(self) -> DriverType:
        """Get the driver type."""
        ...

    @property
    def name(self) -> str:
        """Short lowercase driver name."""
        return self.driver_type.name.lower()

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if this driver can reach any hardware."""
        ...

    @abstractmethod
    def devices(self) -> list[DeviceInfo]:
        """Enumerate locally visible devices."""
        ...

    @abstractmethod
    def create_context(self, device: DeviceInfo) -> Any:
        """Create (or retain) the execution context of a device."""
        ...

    @abstractmethod
    def create_stream(self, context: Any) -> Any:
        """Create a command stream inside ``context``."""
        ...

    @abstractmethod
    def current(self) -> tuple[Any, Any]:
        """Get the calling thread's current ``(context, stream)``."""
        ...

    @abstractmethod
    def make_current(self, context: Any, stream: Any) -> None:
        """Make ``context`` and ``stream`` current for the calling thread."""
        ...

    @abstractmethod
    def synchronize(self) -> None:
        """Block until all work issued to the current device has finished."""
        ...

    @abstractmethod
    def record_event(self, stream: Any) -> Any:
        """Record an event on ``stream`` and return it."""
        ...

    @abstractmethod
    def wait_event(self, stream: Any, event: Any) -> None:
        """Make ``stream`` wait for ``event`` without blocking the host."""
        ...

    @abstractmethod
    def allocator(self, intent: AllocationIntent) -> Allocator:
        """Resolve the native allocation routine for ``intent``."""
        ...

    @abstractmethod
    def is_native(self, value: object) -> bool:
        """Check if ``value`` is a device array of this driver."""
        ...

    @abstractmethod
    def to_device(self, host_value: Any) -> Any:
        """
        Convert a host value into a new array on the current device.

        Raises:
            TypeError: If the value has no numeric array representation.
        """
        ...

    @abstractmethod
    def to_host(self, device_array: Any) -> NDArray[Any]:
        """Copy a device array into a new host array. Synchronizing."""
        ...

    @abstractmethod
    def copy(self, dst: Any, src: Any) -> None:
        """
        Copy ``src`` into ``dst``.

        Either side may be a host array. Device-to-host copies are
        synchronizing; all others are only enqueued.
        """
        ...

    @abstractmethod
    def empty_like(self, device_array: Any) -> Any:
        """Allocate an uninitialized array shaped like ``device_array`` on the current device."""
        ...

    @abstractmethod
    def device_of(self, device_array: Any) -> int:
        """Get the ordinal of the device holding ``device_array``."""
        ...

    @abstractmethod
    def data_ptr(self, device_array: Any) -> int:
        """Get the device address of ``device_array``."""
        ...

    @abstractmethod
    def export_ipc(self, device_array: Any, device: DeviceInfo) -> IpcMemHandle:
        """Export an inter-process handle for ``device_array``."""
        ...

    @abstractmethod
    def open_ipc(self, handle: IpcMemHandle, device: DeviceInfo) -> tuple[Any, Callable[[], None]]:
        """
        Open an exported handle in this process.

        Returns:
            The aliasing array and the action that closes the handle.
        """
        ...

    def free(self, device_array: Any) -> None:
        """Release device memory eagerly where the driver supports it."""
        return None

    def default_routines(self) -> list[tuple[Callable[..., Any], Callable[..., Any]]]:
        """Statically authored host-to-device numeric routine pairs."""
        return []
