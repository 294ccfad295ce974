"""
Worker runtime: one worker process's view of its devices.

Wires the registry, context guard, synchronization bridge, data mover and
execution adapter together around a single driver.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import numpy as np

from gpuplace.backends.base import AllocationIntent, Driver
from gpuplace.backends.cuda import CUDADriver, _check_cuda_available
from gpuplace.backends.emulated import EmulatedDriver
from gpuplace.core.chunk import Chunk, ChunkStore
from gpuplace.core.context import ContextGuard
from gpuplace.core.descriptors import Descriptor, HostProcessor, Processor
from gpuplace.core.executor import ExecutionAdapter, TaskLocalStore
from gpuplace.core.mover import DataMover
from gpuplace.core.registry import DeviceRegistry
from gpuplace.core.routines import RoutineTable
from gpuplace.core.sync import SynchronizationBridge
from gpuplace.exceptions import InvalidConfigurationError

if TYPE_CHECKING:
    from numpy.typing import DTypeLike

    from gpuplace.cluster.base import Cluster
    from gpuplace.core.buffer import DeviceBuffer

logger = logging.getLogger(__name__)

R = TypeVar("R")

_DRIVERS = ("auto", "cuda", "emulated")


@dataclass
class RuntimeConfig:
    """Configuration for a worker runtime."""

    driver: str = "auto"  # "auto", "cuda" or "emulated"
    emulated_devices: int = 0  # Devices on a private emulated node
    warn_untracked: bool = True  # Log when a buffer's stream affinity is off
    sync_after_upload: bool = True  # Synchronize after host-to-device conversion
    thread_name_prefix: str = "gpuplace_task"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.driver not in _DRIVERS:
            raise InvalidConfigurationError("driver", self.driver, f"must be one of {_DRIVERS}")
        if self.emulated_devices < 0:
            raise InvalidConfigurationError(
                "emulated_devices", self.emulated_devices, "must be >= 0"
            )
        if not self.thread_name_prefix:
            raise InvalidConfigurationError(
                "thread_name_prefix", self.thread_name_prefix, "must not be empty"
            )


def create_driver(config: RuntimeConfig) -> Driver:
    """
    Build the driver selected by ``config``.

    Raises:
        BackendNotAvailableError: If "cuda" is requested without CuPy.
    """
    if config.driver == "cuda":
        return CUDADriver()
    if config.driver == "auto" and _check_cuda_available():
        return CUDADriver()
    return EmulatedDriver(device_count=config.emulated_devices)


class WorkerRuntime:
    """
    Everything one worker needs to place data and run tasks on its devices.

    Example:
        >>> with WorkerRuntime(1, RuntimeConfig(driver="emulated", emulated_devices=2)) as rt:
        ...     gpu = sorted(rt.registry.processors(), key=lambda p: p.device)[0]
        ...     buf = rt.move(rt.host, gpu, np.ones(3))
        ...     rt.move(gpu, rt.host, buf)
        array([1., 1., 1.])
    """

    def __init__(
        self,
        worker_id: int = 1,
        config: RuntimeConfig | None = None,
        *,
        driver: Driver | None = None,
        cluster: Cluster | None = None,
        task_locals: TaskLocalStore | None = None,
    ) -> None:
        """
        Initialize a worker runtime.

        Args:
            worker_id: Id of the worker process this runtime stands for.
            config: Runtime configuration.
            driver: Driver to use instead of the one ``config`` selects.
            cluster: Cluster this worker belongs to. A single-worker
                LocalCluster is created when omitted.
            task_locals: Store of task-local scheduler state.
        """
        self._worker_id = worker_id
        self._config = config or RuntimeConfig()
        self._driver = driver if driver is not None else create_driver(self._config)

        self.registry = DeviceRegistry(self._driver, worker_id)
        self.guard = ContextGuard(self.registry)
        self.bridge = SynchronizationBridge(self.registry, self.guard)
        self.routines = RoutineTable()
        self.store = ChunkStore(worker_id)

        if cluster is None:
            from gpuplace.cluster.local import LocalCluster

            cluster = LocalCluster()
            cluster.attach(self)
        self._cluster = cluster

        self.mover = DataMover(
            self.registry,
            self.guard,
            self.bridge,
            self.routines,
            self.store,
            cluster,
            warn_untracked=self._config.warn_untracked,
            sync_after_upload=self._config.sync_after_upload,
        )
        self.executor = ExecutionAdapter(
            self.registry,
            self.guard,
            task_locals or TaskLocalStore(),
            thread_name_prefix=self._config.thread_name_prefix,
        )
        self._active = False

    def __enter__(self) -> WorkerRuntime:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.shutdown()

    async def __aenter__(self) -> WorkerRuntime:
        """Async context manager entry."""
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        self.shutdown()

    def start(self) -> None:
        """Discover devices and load the driver's routine substitutions."""
        if self._active:
            return

        self.registry.init()
        if self.registry.has_devices:
            for host_fn, device_fn in self._driver.default_routines():
                self.routines.register(host_fn, device_fn)
        self._active = True
        logger.info(
            f"Worker {self._worker_id} started on {self._driver.name} "
            f"with {len(self.registry.devices)} device(s)"
        )

    def shutdown(self) -> None:
        """Drain devices and drop stored chunks."""
        if not self._active:
            return

        self.registry.shutdown()
        dropped = self.store.clear()
        self._active = False
        logger.debug(f"Worker {self._worker_id} shut down, dropped {dropped} chunk(s)")

    @property
    def worker_id(self) -> int:
        return self._worker_id

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def driver(self) -> Driver:
        return self._driver

    @property
    def cluster(self) -> Cluster:
        return self._cluster

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def host(self) -> HostProcessor:
        """Get this worker's host processor."""
        return HostProcessor(self._worker_id)

    def processors(self) -> set[Processor]:
        """Get every processor this worker advertises."""
        return {self.host, *self.registry.processors()}

    def put(self, value: Any) -> Chunk:
        """Store ``value`` on this worker and return a chunk referring to it."""
        return self.store.put(value)

    def move(self, from_desc: Descriptor, to_desc: Descriptor, value: Any) -> Any:
        return self.mover.move(from_desc, to_desc, value)

    def move_into(self, to_space: Descriptor, from_space: Descriptor, dst: Any, src: Any) -> None:
        self.mover.move_into(to_space, from_space, dst, src)

    def allocate(
        self,
        proc: Descriptor,
        intent: AllocationIntent,
        shape: tuple[int, ...] | int,
        dtype: DTypeLike = np.float32,
    ) -> DeviceBuffer | np.ndarray:
        return self.mover.allocate(proc, intent, shape, dtype)

    def execute(
        self,
        proc: Processor,
        fn: Callable[..., R],
        *args: Any,
        state: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> R:
        return self.executor.execute(proc, fn, *args, state=state, **kwargs)

    def __repr__(self) -> str:
        return (
            f"WorkerRuntime(worker={self._worker_id}, driver={self._driver.name}, "
            f"active={self._active})"
        )
