"""
Device buffers with explicit stream affinity.

A DeviceBuffer records the stream that last wrote it. Any reader on a
different stream must first be ordered after that stream, either through
an event edge or a full device synchronization.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from gpuplace.core.descriptors import DeviceMemorySpace, HostMemorySpace
from gpuplace.exceptions import BufferReleasedError

if TYPE_CHECKING:
    import numpy as np

    from gpuplace.backends.base import Driver, IpcMemHandle


@dataclass(frozen=True)
class MemorySpan:
    """A contiguous byte range inside one memory space."""

    space: DeviceMemorySpace
    ptr: int
    nbytes: int

    def overlaps(self, other: MemorySpan) -> bool:
        """Check if two spans share at least one byte of the same memory space."""
        if self.space != other.space:
            return False
        return self.ptr < other.ptr + other.nbytes and other.ptr < self.ptr + self.nbytes


class IpcAlias:
    """
    Ownership of an opened inter-process memory handle.

    The close action runs exactly once: on ``close()`` or when a ``with``
    block over the alias exits.
    """

    def __init__(self, handle: IpcMemHandle, close: Callable[[], None]) -> None:
        self.handle = handle
        self._close = close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._close()

    def __enter__(self) -> IpcAlias:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()


class DeviceBuffer:
    """
    Handle to an accelerator-resident array.

    Example:
        >>> buf = runtime.mover.move(host, device, np.arange(4.0))
        >>> buf.space == device_space
        True
        >>> with buf:  # memory released on exit
        ...     ...
    """

    def __init__(
        self,
        data: Any,
        space: DeviceMemorySpace,
        stream: Any,
        driver: Driver,
        *,
        alias: IpcAlias | None = None,
    ) -> None:
        """
        Initialize a device buffer.

        Args:
            data: Native device array.
            space: Memory space holding the array.
            stream: Stream that last wrote the array.
            driver: Driver that owns the native array.
            alias: Set when ``data`` maps memory exported by another worker.
        """
        self._data = data
        self._space = space
        self._stream = stream
        self._driver = driver
        self._alias = alias
        self._released = False

    @property
    def data(self) -> Any:
        """Get the native device array."""
        if self._released:
            raise BufferReleasedError()
        return self._data

    @property
    def space(self) -> DeviceMemorySpace:
        return self._space

    @property
    def stream(self) -> Any:
        """Get the stream this buffer was last written on."""
        return self._stream

    @property
    def driver(self) -> Driver:
        return self._driver

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def dtype(self) -> np.dtype[Any]:
        return self.data.dtype

    @property
    def nbytes(self) -> int:
        return int(self.data.nbytes)

    @property
    def ptr(self) -> int:
        return self._driver.data_ptr(self.data)

    @property
    def is_alias(self) -> bool:
        """Check if this buffer maps another worker's allocation."""
        return self._alias is not None

    @property
    def released(self) -> bool:
        return self._released

    def mark_written(self, stream: Any) -> None:
        """Record that ``stream`` is now the last writer."""
        self._stream = stream

    def is_tracked(self, stream: Any) -> bool:
        """Check if ``stream`` is this buffer's affinity stream."""
        return self._stream == stream

    def aliasing(self) -> MemorySpan:
        """Get the memory range this buffer occupies."""
        return MemorySpan(self._space, self.ptr, self.nbytes)

    def release(self) -> None:
        """Release the device memory, or close the IPC mapping of an alias."""
        if self._released:
            return
        self._released = True
        if self._alias is not None:
            self._alias.close()
        else:
            self._driver.free(self._data)
        self._data = None

    def __enter__(self) -> DeviceBuffer:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        if self._released:
            return f"DeviceBuffer(released, space={self._space!r})"
        return (
            f"DeviceBuffer(shape={self.shape}, dtype={self.dtype}, "
            f"space={self._space!r}, alias={self.is_alias})"
        )


def memory_space(value: object, worker_id: int) -> DeviceMemorySpace | HostMemorySpace:
    """Get the memory space ``value`` lives in, as seen from ``worker_id``."""
    if isinstance(value, DeviceBuffer):
        return value.space
    return HostMemorySpace(worker_id)


def unsafe_free(buffer: DeviceBuffer) -> None:
    """Release ``buffer`` immediately, regardless of other references to it."""
    buffer.release()
