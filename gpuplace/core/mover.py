"""
Data mover: the transfer protocol between memory spaces.

Every (source, destination) pair is first classified into a Route from the
two descriptors' ownership and locality, then dispatched to the handler
for that route:

    PASSTHROUGH            shareable value, returned as is
    HOST_TO_HOST           same worker: value; else fetched from its owner
    HOST_TO_DEVICE         upload in the destination context, then sync
    DEVICE_TO_HOST         sync the source device, synchronizing download
    DEVICE_TO_HOST_REMOTE  the owning worker downloads, result crosses over
    SAME_DEVICE            no-op, sync only if stream affinity is off
    CROSS_DEVICE           event edge, then device-to-device copy
    IPC                    alias the owner's allocation via an IPC handle
    IPC_CROSS_DEVICE       IPC alias, then copy onto the destination device
    CROSS_NODE             owner downloads, bytes cross, upload here
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, cast
from uuid import UUID

import numpy as np

from gpuplace.backends.base import AllocationIntent, DeviceInfo, IpcMemHandle
from gpuplace.core.buffer import DeviceBuffer, IpcAlias
from gpuplace.core.chunk import Chunk, ChunkKind, ChunkStore
from gpuplace.core.context import ContextGuard
from gpuplace.core.descriptors import (
    Descriptor,
    DeviceMemorySpace,
    HostMemorySpace,
    MemorySpace,
    as_space,
    is_host,
)
from gpuplace.core.registry import DeviceRegistry
from gpuplace.core.routines import RoutineTable
from gpuplace.core.sync import SynchronizationBridge
from gpuplace.exceptions import (
    ForeignPlacementError,
    GpuPlaceError,
    IpcHandleError,
    TransferError,
)

if TYPE_CHECKING:
    from numpy.typing import DTypeLike

    from gpuplace.cluster.base import Cluster
    from gpuplace.core.runtime import WorkerRuntime


logger = logging.getLogger(__name__)


class Route(Enum):
    """Transfer path chosen for one move."""

    PASSTHROUGH = auto()
    HOST_TO_HOST = auto()
    HOST_TO_DEVICE = auto()
    DEVICE_TO_HOST = auto()
    DEVICE_TO_HOST_REMOTE = auto()
    SAME_DEVICE = auto()
    CROSS_DEVICE = auto()
    IPC = auto()
    IPC_CROSS_DEVICE = auto()
    CROSS_NODE = auto()


_SHAREABLE_SCALARS = (str, bytes, bool, int, float, complex, type(None), Enum, UUID, np.generic)


def is_passthrough(value: object) -> bool:
    """
    Check if ``value`` can be shared across memory spaces unchanged.

    Functions, classes, text and immutable scalars are; arrays, buffers
    and chunks are not.
    """
    if isinstance(value, (DeviceBuffer, Chunk, np.ndarray)):
        return False
    if isinstance(value, type) or isinstance(value, _SHAREABLE_SCALARS):
        return True
    if isinstance(value, (tuple, frozenset)):
        return all(is_passthrough(item) for item in value)
    return callable(value)


def _as_uploadable(value: Any) -> np.ndarray | None:
    """Convert ``value`` to a host array, or None if it has no device representation."""
    if isinstance(value, (dict, set, frozenset)):
        return None
    try:
        host = np.asarray(value)
    except ValueError:  # ragged nesting
        return None
    if host.dtype == object:
        return None
    return host


# Routes whose handlers expect a device buffer or a chunk of one
_BUFFER_ROUTES = frozenset({
    Route.DEVICE_TO_HOST_REMOTE,
    Route.SAME_DEVICE,
    Route.CROSS_DEVICE,
    Route.IPC,
    Route.IPC_CROSS_DEVICE,
    Route.CROSS_NODE,
})


_HOST_ALLOCATORS: dict[AllocationIntent, Callable[[tuple[int, ...], Any], np.ndarray]] = {
    AllocationIntent.UNDEF: lambda shape, dtype: np.empty(shape, dtype=dtype),
    AllocationIntent.ZEROS: lambda shape, dtype: np.zeros(shape, dtype=dtype),
    AllocationIntent.ONES: lambda shape, dtype: np.ones(shape, dtype=dtype),
    AllocationIntent.RAND: lambda shape, dtype: np.random.random(shape).astype(dtype),
    AllocationIntent.RANDN: lambda shape, dtype: np.random.standard_normal(shape).astype(dtype),
}


# Entry points executed on the owning worker by a remote call


def _remote_unwrap(runtime: WorkerRuntime, chunk: Chunk) -> Any:
    return runtime.store.unwrap(chunk)


def _remote_download(runtime: WorkerRuntime, chunk: Chunk, src: DeviceMemorySpace) -> Any:
    return runtime.mover.move(src, HostMemorySpace(runtime.worker_id), chunk)


def _remote_export_ipc(runtime: WorkerRuntime, chunk: Chunk, src: DeviceMemorySpace) -> IpcMemHandle:
    return runtime.mover.export_ipc(chunk, src)


class DataMover:
    """
    Moves values between host and device memory spaces of a cluster.

    One mover exists per worker; it only ever allocates on, or issues work
    to, devices of its own worker and reaches other workers through the
    cluster's remote calls.

    Example:
        >>> buf = mover.move(HostProcessor(1), gpu0, np.array([1.0, 2.0, 3.0]))
        >>> mover.move(gpu0, HostProcessor(1), buf)
        array([1., 2., 3.])
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        guard: ContextGuard,
        bridge: SynchronizationBridge,
        routines: RoutineTable,
        store: ChunkStore,
        cluster: Cluster,
        *,
        warn_untracked: bool = True,
        sync_after_upload: bool = True,
    ) -> None:
        self._registry = registry
        self._guard = guard
        self._bridge = bridge
        self._routines = routines
        self._store = store
        self._cluster = cluster
        self._warn_untracked = warn_untracked
        self._sync_after_upload = sync_after_upload
        self._handlers: dict[Route, Callable[[Any, Any, Any], Any]] = {
            Route.HOST_TO_HOST: self._host_to_host,
            Route.HOST_TO_DEVICE: self._host_to_device,
            Route.DEVICE_TO_HOST: self._device_to_host,
            Route.DEVICE_TO_HOST_REMOTE: self._device_to_host_remote,
            Route.SAME_DEVICE: self._same_device,
            Route.CROSS_DEVICE: self._cross_device,
            Route.IPC: functools.partial(self._ipc, Route.IPC),
            Route.IPC_CROSS_DEVICE: functools.partial(self._ipc, Route.IPC_CROSS_DEVICE),
            Route.CROSS_NODE: self._cross_node,
        }

    @property
    def worker_id(self) -> int:
        return self._registry.worker_id

    @property
    def _driver(self) -> Any:
        return self._registry.driver

    def classify(self, from_desc: Descriptor, to_desc: Descriptor) -> Route:
        """Choose the transfer path between two placements."""
        src = as_space(from_desc)
        dst = as_space(to_desc)

        if is_host(src):
            return Route.HOST_TO_HOST if is_host(dst) else Route.HOST_TO_DEVICE
        if is_host(dst):
            if src.owner == self.worker_id:
                return Route.DEVICE_TO_HOST
            return Route.DEVICE_TO_HOST_REMOTE

        src = cast(DeviceMemorySpace, src)
        dst = cast(DeviceMemorySpace, dst)
        if src == dst:
            return Route.SAME_DEVICE
        if src.owner == dst.owner:
            return Route.CROSS_DEVICE
        if self._cluster.node_id(src.owner) == self._cluster.node_id(dst.owner):
            if src.device_uuid == dst.device_uuid:
                return Route.IPC
            return Route.IPC_CROSS_DEVICE
        return Route.CROSS_NODE

    def move(self, from_desc: Descriptor, to_desc: Descriptor, value: Any) -> Any:
        """
        Produce an equivalent of ``value`` in ``to_desc``'s memory space.

        Args:
            from_desc: Processor or memory space ``value`` currently lives in.
            to_desc: Processor or memory space the value is needed in.
            value: The value, a DeviceBuffer, or a Chunk referring to either.

        Returns:
            A host value, a DeviceBuffer, or ``value`` itself when no
            transfer is needed.

        Raises:
            TransferError: If a native copy, allocation or IPC step fails.
        """
        if isinstance(value, Chunk) and value.kind is not ChunkKind.DEVICE:
            value = self._fetch(value)

        src = as_space(from_desc)
        dst = as_space(to_desc)
        if is_passthrough(value):
            if callable(value) and not is_host(dst):
                substitute = self._routines.lookup(value)
                if substitute is not None:
                    return substitute
            logger.debug(f"{Route.PASSTHROUGH.name}: {type(value).__name__}")
            return value

        route = self.classify(src, dst)
        if route in _BUFFER_ROUTES and not isinstance(value, (Chunk, DeviceBuffer)):
            # Host data placed on a device processor is sent from local host memory
            src = HostMemorySpace(self.worker_id)
            route = self.classify(src, dst)
        logger.debug(f"{route.name}: {src!r} -> {dst!r}")
        return self._handlers[route](src, dst, value)

    @contextmanager
    def _transfer(
        self,
        src: object,
        dst: object,
        route: Route,
        error: type[TransferError] = TransferError,
    ) -> Iterator[None]:
        try:
            yield
        except GpuPlaceError:
            raise
        except Exception as e:
            raise error(src, dst, e, route.name) from e

    def _fetch(self, chunk: Chunk) -> Any:
        if chunk.owner == self.worker_id:
            return self._store.unwrap(chunk)
        return self._cluster.remote_call(self.worker_id, chunk.owner, _remote_unwrap, chunk)

    def _local_buffer(self, value: Any) -> DeviceBuffer:
        if isinstance(value, Chunk):
            if value.owner != self.worker_id:
                raise ForeignPlacementError(value, self.worker_id)
            value = self._store.unwrap(value)
        if not isinstance(value, DeviceBuffer):
            raise TypeError(f"Expected a device buffer, got {type(value).__name__}")
        return value

    def _remote_chunk(self, value: Any, src: DeviceMemorySpace) -> Chunk:
        if not isinstance(value, Chunk) or value.owner != src.owner:
            raise TypeError(
                f"Values on worker {src.owner} must be passed as chunks owned by that worker"
            )
        return value

    def _wrap(self, data: Any, space: DeviceMemorySpace, alias: IpcAlias | None = None) -> DeviceBuffer:
        return DeviceBuffer(
            data,
            space,
            self._registry.stream_for(space.device),
            self._driver,
            alias=alias,
        )

    def _check_affinity(self, buffer: DeviceBuffer, space: DeviceMemorySpace) -> bool:
        """Synchronize ``space`` if ``buffer`` was last written elsewhere; report whether it was tracked."""
        stream = self._registry.stream_for(space.device)
        if buffer.is_tracked(stream):
            return True
        if self._warn_untracked:
            logger.warning(f"Untracked buffer on {space!r}: {stream!r} vs {buffer.stream!r}")
        self._bridge.sync_local(space)
        buffer.mark_written(stream)
        return False

    # Route handlers

    def _host_to_host(self, src: HostMemorySpace, dst: HostMemorySpace, value: Any) -> Any:
        if isinstance(value, Chunk):
            return self._fetch(value)
        return value

    def _host_to_device(self, src: MemorySpace, dst: DeviceMemorySpace, value: Any) -> Any:
        if isinstance(value, Chunk):
            value = self._fetch(value)
        if is_passthrough(value):
            return value

        if isinstance(value, DeviceBuffer):
            if value.space == dst:
                return value
            return self._cross_device(value.space, dst, value)

        host = _as_uploadable(value)
        if host is None:
            logger.debug(f"Keeping {type(value).__name__} in host memory")
            return value

        with self._transfer(src, dst, Route.HOST_TO_DEVICE), self._guard.using(dst):
            data = self._driver.to_device(host)
            if self._sync_after_upload:
                self._driver.synchronize()
        return self._wrap(data, dst)

    def _device_to_host(self, src: DeviceMemorySpace, dst: HostMemorySpace, value: Any) -> Any:
        if isinstance(value, Chunk):
            value = self._store.unwrap(value)
        if not isinstance(value, DeviceBuffer):
            self._bridge.sync_local(src)
            return value

        with self._transfer(src, dst, Route.DEVICE_TO_HOST):
            self._bridge.sync_local(src)
            with self._guard.using(src):
                # Downloads are synchronizing
                return self._driver.to_host(value.data)

    def _device_to_host_remote(self, src: DeviceMemorySpace, dst: HostMemorySpace, value: Any) -> Any:
        chunk = self._remote_chunk(value, src)
        return self._cluster.remote_call(self.worker_id, src.owner, _remote_download, chunk, src)

    def _same_device(self, src: DeviceMemorySpace, dst: DeviceMemorySpace, value: Any) -> Any:
        buffer = self._local_buffer(value)
        self._check_affinity(buffer, src)
        return buffer

    def _cross_device(self, src: DeviceMemorySpace, dst: DeviceMemorySpace, value: Any) -> Any:
        buffer = self._local_buffer(value)
        if self._check_affinity(buffer, src):
            self._bridge.sync_cross(src, dst)

        with self._transfer(src, dst, Route.CROSS_DEVICE), self._guard.using(dst):
            data = self._driver.empty_like(buffer.data)
            self._driver.copy(data, buffer.data)
        return self._wrap(data, dst)

    def _ipc(self, route: Route, src: DeviceMemorySpace, dst: DeviceMemorySpace, value: Any) -> Any:
        chunk = self._remote_chunk(value, src)
        handle = self._cluster.remote_call(self.worker_id, src.owner, _remote_export_ipc, chunk, src)

        with self._transfer(src, dst, route, IpcHandleError):
            data, close = self._driver.open_ipc(handle, self._import_device(handle, src, dst, route))
        alias = IpcAlias(handle, close)

        if route is Route.IPC:
            return self._wrap(data, dst, alias)

        with alias, self._transfer(src, dst, route), self._guard.using(dst):
            copied = self._driver.empty_like(data)
            self._driver.copy(copied, data)
            # The alias is closed on exit, so the copy has to land first
            self._driver.synchronize()
        return self._wrap(copied, dst)

    def _import_device(
        self, handle: IpcMemHandle, src: DeviceMemorySpace, dst: DeviceMemorySpace, route: Route
    ) -> DeviceInfo:
        """Find the local device holding the exported allocation."""
        for info in self._registry.devices:
            if info.uuid == handle.device_uuid:
                return info
        raise IpcHandleError(
            src, dst, LookupError(f"No local device with uuid {handle.device_uuid}"), route.name
        )

    def _cross_node(self, src: DeviceMemorySpace, dst: DeviceMemorySpace, value: Any) -> Any:
        chunk = self._remote_chunk(value, src)
        host = self._cluster.remote_call(self.worker_id, src.owner, _remote_download, chunk, src)
        return self._host_to_device(HostMemorySpace(self.worker_id), dst, host)

    def export_ipc(self, chunk: Chunk, src: DeviceMemorySpace) -> IpcMemHandle:
        """
        Export an IPC handle for a locally held device chunk.

        The device is synchronized first so the importer observes every
        write issued before the export.
        """
        buffer = self._local_buffer(chunk)
        self._bridge.sync_local(src)
        with self._transfer(chunk, src, Route.IPC, IpcHandleError):
            return self._driver.export_ipc(buffer.data, self._registry.device_for(src.device))

    # In-place transfers

    def move_into(self, to_space: Descriptor, from_space: Descriptor, dst: Any, src: Any) -> None:
        """
        Copy ``src`` into the pre-allocated ``dst``.

        Device destinations only have the copy enqueued; later readers
        synchronize through the destination's stream affinity.

        Raises:
            TypeError: If either placement is not a descriptor.
            ForeignPlacementError: If ``to_space`` is a device of another worker.
        """
        to_space = as_space(to_space)
        from_space = as_space(from_space)

        if is_host(to_space) and is_host(from_space):
            np.copyto(dst, src)
            return

        if is_host(to_space):
            from_space = cast(DeviceMemorySpace, from_space)
            with self._transfer(from_space, to_space, Route.DEVICE_TO_HOST):
                if from_space.owner == self.worker_id:
                    self._bridge.sync_local(from_space)
                with self._guard.using(from_space):
                    self._driver.copy(dst, src.data)
            return

        to_space = cast(DeviceMemorySpace, to_space)
        if to_space.owner != self.worker_id:
            raise ForeignPlacementError(to_space, self.worker_id)
        if is_host(from_space):
            route = Route.HOST_TO_DEVICE
            source = src
        else:
            from_space = cast(DeviceMemorySpace, from_space)
            route = Route.SAME_DEVICE if from_space == to_space else Route.CROSS_DEVICE
            if route is Route.CROSS_DEVICE:
                self._bridge.sync_cross(from_space, to_space)
            source = src.data

        with self._transfer(from_space, to_space, route), self._guard.using(to_space):
            self._driver.copy(dst.data, source)
        dst.mark_written(self._registry.stream_for(to_space.device))

    # Allocation dispatch

    def allocator_for(
        self, proc: Descriptor, intent: AllocationIntent
    ) -> Callable[..., DeviceBuffer | np.ndarray]:
        """Resolve the allocation routine for ``intent`` on ``proc``."""
        space = as_space(proc)
        if is_host(space):
            host_alloc = _HOST_ALLOCATORS[intent]
            return lambda shape, dtype=np.float32: host_alloc(tuple(shape), dtype)

        space = cast(DeviceMemorySpace, space)
        native = self._driver.allocator(intent)

        def allocate(shape: tuple[int, ...], dtype: DTypeLike = np.float32) -> DeviceBuffer:
            with self._transfer(None, space, Route.HOST_TO_DEVICE), self._guard.using(space):
                data = native(tuple(shape), dtype)
            return self._wrap(data, space)

        return allocate

    def allocate(
        self,
        proc: Descriptor,
        intent: AllocationIntent,
        shape: tuple[int, ...] | int,
        dtype: DTypeLike = np.float32,
    ) -> DeviceBuffer | np.ndarray:
        """Allocate a buffer with the native routine for ``intent``."""
        if isinstance(shape, int):
            shape = (shape,)
        return self.allocator_for(proc, intent)(shape, dtype)

    def __repr__(self) -> str:
        return f"DataMover(worker={self.worker_id}, driver={self._driver.name})"

