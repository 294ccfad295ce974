"""
Emulated device driver for gpuplace.

Provides a NumPy-backed multi-device implementation of the driver interface.
Work enqueued on a stream is deferred until the stream is synchronized or
another stream waits on an event recorded on it, so missing synchronization
shows up as stale reads exactly as it would on real hardware.

Useful for testing and development without GPU.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import numpy as np

from gpuplace.backends.base import (
    AllocationIntent,
    Allocator,
    DeviceInfo,
    Driver,
    DriverType,
    IpcMemHandle,
)
from gpuplace.exceptions import BackendError

if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray


logger = logging.getLogger(__name__)


class EmulatedDevice:
    """One physical emulated accelerator with its own IPC export table."""

    def __init__(self, ordinal: int, uuid: UUID | None = None, name: str | None = None) -> None:
        self.ordinal = ordinal
        self.uuid = uuid or uuid4()
        self.name = name or f"Emulated GPU {ordinal}"
        self._ipc_table: dict[int, np.ndarray] = {}
        self._alloc_ids = itertools.count(1)
        self._lock = threading.Lock()

    def allocate(self, shape: tuple[int, ...], dtype: DTypeLike) -> EmulatedArray:
        with self._lock:
            alloc_id = next(self._alloc_ids)
        return EmulatedArray(self, np.empty(shape, dtype=dtype), alloc_id)

    def publish(self, array: EmulatedArray) -> int:
        with self._lock:
            self._ipc_table[array.alloc_id] = array._mem
        return array.alloc_id

    def unpublish(self, alloc_id: int) -> None:
        with self._lock:
            self._ipc_table.pop(alloc_id, None)

    def lookup(self, alloc_id: int) -> np.ndarray:
        with self._lock:
            try:
                return self._ipc_table[alloc_id]
            except KeyError:
                raise LookupError(
                    f"Allocation {alloc_id} was never exported from {self.name}"
                ) from None

    def __repr__(self) -> str:
        return f"EmulatedDevice(ordinal={self.ordinal}, uuid={self.uuid})"


class EmulatedNode:
    """
    A physical machine hosting a fixed set of emulated devices.

    Every driver built on the same node sees the same devices, which is
    what makes IPC handles exported by one worker openable by another.
    """

    def __init__(self, device_count: int = 1, *, node_id: UUID | None = None) -> None:
        if device_count < 0:
            raise ValueError(f"device_count must be >= 0, got {device_count}")
        self.node_id = node_id or uuid4()
        self.devices = [EmulatedDevice(i) for i in range(device_count)]

    def __repr__(self) -> str:
        return f"EmulatedNode(node_id={self.node_id}, devices={len(self.devices)})"


class EmulatedArray:
    """Device-resident array. Its memory is only reachable through a driver."""

    def __init__(self, device: EmulatedDevice, mem: np.ndarray, alloc_id: int) -> None:
        self.device = device
        self._mem = mem
        self.alloc_id = alloc_id

    @property
    def shape(self) -> tuple[int, ...]:
        return self._mem.shape

    @property
    def dtype(self) -> np.dtype[Any]:
        return self._mem.dtype

    @property
    def nbytes(self) -> int:
        return self._mem.nbytes

    @property
    def ptr(self) -> int:
        return int(self._mem.__array_interface__["data"][0])

    def __repr__(self) -> str:
        return (
            f"EmulatedArray(shape={self.shape}, dtype={self.dtype}, "
            f"device={self.device.ordinal}, alloc={self.alloc_id})"
        )


class EmulatedContext:
    """Execution context bound to one emulated device."""

    def __init__(self, device: EmulatedDevice) -> None:
        self.device = device

    def __repr__(self) -> str:
        return f"EmulatedContext(device={self.device.ordinal})"


class EmulatedStream:
    """
    In-order command queue.

    Operations run in issue order, lazily, when the stream is drained.
    """

    def __init__(self, context: EmulatedContext) -> None:
        self.context = context
        self._pending: deque[Callable[[], None]] = deque()
        self._lock = threading.Lock()
        self._drain_lock = threading.RLock()
        self._issued = 0
        self._completed = 0

    @property
    def position(self) -> int:
        """Number of operations issued so far."""
        with self._lock:
            return self._issued

    @property
    def completed(self) -> int:
        with self._lock:
            return self._completed

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def enqueue(self, op: Callable[[], None]) -> int:
        with self._lock:
            self._pending.append(op)
            self._issued += 1
            return self._issued

    def synchronize(self, upto: int | None = None) -> None:
        """Run queued operations until ``upto`` of them have completed."""
        with self._drain_lock:
            while True:
                with self._lock:
                    target = self._issued if upto is None else upto
                    if self._completed >= target or not self._pending:
                        return
                    op = self._pending.popleft()
                op()
                with self._lock:
                    self._completed += 1

    def __repr__(self) -> str:
        return f"EmulatedStream(device={self.context.device.ordinal}, id={id(self):#x})"


class EmulatedEvent:
    """Marker for a position in a stream's issue order."""

    def __init__(self, stream: EmulatedStream, position: int) -> None:
        self.stream = stream
        self.position = position

    def query(self) -> bool:
        """Check if all work before the marker has completed."""
        return self.stream.completed >= self.position

    def synchronize(self) -> None:
        self.stream.synchronize(self.position)


def _fill_undef(rng: np.random.Generator, arr: np.ndarray) -> None:
    pass


def _fill_zeros(rng: np.random.Generator, arr: np.ndarray) -> None:
    arr.fill(0)


def _fill_ones(rng: np.random.Generator, arr: np.ndarray) -> None:
    arr.fill(1)


def _fill_rand(rng: np.random.Generator, arr: np.ndarray) -> None:
    arr[...] = rng.random(arr.shape)


def _fill_randn(rng: np.random.Generator, arr: np.ndarray) -> None:
    arr[...] = rng.standard_normal(arr.shape)


_FILLERS: dict[AllocationIntent, Callable[[np.random.Generator, np.ndarray], None]] = {
    AllocationIntent.UNDEF: _fill_undef,
    AllocationIntent.ZEROS: _fill_zeros,
    AllocationIntent.ONES: _fill_ones,
    AllocationIntent.RAND: _fill_rand,
    AllocationIntent.RANDN: _fill_randn,
}


class EmulatedDriver(Driver):
    """
    Emulated driver implementation.

    Each driver instance stands for one worker process: it owns its own
    streams and thread-local current context, while the devices themselves
    belong to the (possibly shared) node.

    Example:
        >>> driver = EmulatedDriver(device_count=2)
        >>> [d.ordinal for d in driver.devices()]
        [0, 1]
    """

    def __init__(
        self,
        device_count: int = 2,
        *,
        node: EmulatedNode | None = None,
        seed: int | None = None,
    ) -> None:
        """
        Initialize the emulated driver.

        Args:
            device_count: Number of devices on a private node. Ignored when
                ``node`` is given.
            node: Node whose devices this driver sees.
            seed: Seed for random allocation intents.
        """
        self._node = node if node is not None else EmulatedNode(device_count)
        self._local = threading.local()
        self._streams: dict[int, list[EmulatedStream]] = {}
        self._lock = threading.Lock()
        self._rng = np.random.default_rng(seed)
        self._stats = {
            "allocations": 0,
            "copies": 0,
            "synchronizations": 0,
            "events": 0,
            "ipc_exports": 0,
            "ipc_opens": 0,
            "ipc_closes": 0,
        }

    @property
    def driver_type(self) -> DriverType:
        return DriverType.EMULATED

    @property
    def is_available(self) -> bool:
        return bool(self._node.devices)

    @property
    def node(self) -> EmulatedNode:
        """Get the node whose devices this driver sees."""
        return self._node

    @property
    def stats(self) -> dict[str, int]:
        """Get operation counters."""
        with self._lock:
            return self._stats.copy()

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def devices(self) -> list[DeviceInfo]:
        return [
            DeviceInfo(ordinal=d.ordinal, uuid=d.uuid, name=d.name, handle=d)
            for d in self._node.devices
        ]

    def create_context(self, device: DeviceInfo) -> EmulatedContext:
        return EmulatedContext(device.handle)

    def create_stream(self, context: EmulatedContext) -> EmulatedStream:
        stream = EmulatedStream(context)
        with self._lock:
            self._streams.setdefault(context.device.ordinal, []).append(stream)
        return stream

    def current(self) -> tuple[EmulatedContext | None, EmulatedStream | None]:
        return (
            getattr(self._local, "context", None),
            getattr(self._local, "stream", None),
        )

    def make_current(self, context: EmulatedContext | None, stream: EmulatedStream | None) -> None:
        self._local.context = context
        self._local.stream = stream

    def _current_stream(self) -> EmulatedStream:
        _, stream = self.current()
        if stream is None:
            raise BackendError("No current stream; activate a device context first")
        return stream

    def _current_device(self) -> EmulatedDevice:
        context, _ = self.current()
        if context is None:
            raise BackendError("No current context; activate a device context first")
        return context.device

    def synchronize(self) -> None:
        device = self._current_device()
        with self._lock:
            streams = list(self._streams.get(device.ordinal, ()))
        for stream in streams:
            stream.synchronize()
        self._count("synchronizations")

    def record_event(self, stream: EmulatedStream) -> EmulatedEvent:
        self._count("events")
        return EmulatedEvent(stream, stream.position)

    def wait_event(self, stream: EmulatedStream, event: EmulatedEvent) -> None:
        stream.enqueue(event.synchronize)

    def allocator(self, intent: AllocationIntent) -> Allocator:
        fill = _FILLERS[intent]

        def allocate(shape: tuple[int, ...], dtype: DTypeLike = np.float32) -> EmulatedArray:
            array = self._current_device().allocate(tuple(shape), dtype)
            fill(self._rng, array._mem)
            self._count("allocations")
            return array

        return allocate

    def is_native(self, value: object) -> bool:
        return isinstance(value, EmulatedArray)

    def to_device(self, host_value: Any) -> EmulatedArray:
        host = np.asarray(host_value)
        if host.dtype == object:
            raise TypeError(f"Unsupported dtype object for {type(host_value).__name__}")
        array = self._current_device().allocate(host.shape, host.dtype)
        self._count("allocations")
        self.copy(array, host)
        return array

    def to_host(self, device_array: EmulatedArray) -> NDArray[Any]:
        out = np.empty(device_array.shape, dtype=device_array.dtype)
        self.copy(out, device_array)
        return out

    def copy(self, dst: Any, src: Any) -> None:
        if tuple(dst.shape) != tuple(src.shape):
            raise ValueError(f"Shape mismatch: cannot copy {src.shape} into {dst.shape}")

        stream = self._current_stream()
        self._count("copies")

        if isinstance(dst, EmulatedArray):
            if isinstance(src, EmulatedArray):
                stream.enqueue(lambda: np.copyto(dst._mem, src._mem))
            else:
                staged = np.array(src, dtype=dst.dtype, copy=True)
                stream.enqueue(lambda: np.copyto(dst._mem, staged))
            return

        # Device to host blocks until the copy has landed
        stream.enqueue(lambda: np.copyto(dst, src._mem))
        stream.synchronize()

    def empty_like(self, device_array: EmulatedArray) -> EmulatedArray:
        self._count("allocations")
        return self._current_device().allocate(device_array.shape, device_array.dtype)

    def device_of(self, device_array: EmulatedArray) -> int:
        return device_array.device.ordinal

    def data_ptr(self, device_array: EmulatedArray) -> int:
        return device_array.ptr

    def export_ipc(self, device_array: EmulatedArray, device: DeviceInfo) -> IpcMemHandle:
        alloc_id = device_array.device.publish(device_array)
        self._count("ipc_exports")
        return IpcMemHandle(
            driver=self.name,
            device_uuid=device_array.device.uuid,
            payload=alloc_id.to_bytes(8, "little"),
            shape=tuple(device_array.shape),
            dtype=str(device_array.dtype),
        )

    def open_ipc(
        self, handle: IpcMemHandle, device: DeviceInfo
    ) -> tuple[EmulatedArray, Callable[[], None]]:
        target = next((d for d in self._node.devices if d.uuid == handle.device_uuid), None)
        if target is None:
            raise LookupError(f"Device {handle.device_uuid} is not visible on {self._node!r}")

        alloc_id = int.from_bytes(handle.payload, "little")
        alias = EmulatedArray(target, target.lookup(alloc_id), alloc_id)
        self._count("ipc_opens")

        def close() -> None:
            self._count("ipc_closes")
            logger.debug(f"Closed IPC alias of allocation {alloc_id} on {target!r}")

        return alias, close

    def free(self, device_array: EmulatedArray) -> None:
        device_array.device.unpublish(device_array.alloc_id)

    def __repr__(self) -> str:
        return f"EmulatedDriver(devices={len(self._node.devices)}, node={self._node.node_id})"
