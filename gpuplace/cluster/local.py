"""
In-process cluster of workers and nodes.

Every worker gets its own WorkerRuntime and driver, so contexts, streams
and chunk stores are as separate as they would be across processes.
Workers on the same node share that node's emulated devices, so IPC
handles exported by one can be opened by another. Values handed between
different workers always go through the wire codec.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from typing import Any, TypeVar
from uuid import NAMESPACE_DNS, UUID, uuid5

from gpuplace.backends.emulated import EmulatedDriver, EmulatedNode
from gpuplace.cluster import wire
from gpuplace.cluster.base import Cluster
from gpuplace.core.descriptors import Processor
from gpuplace.core.runtime import RuntimeConfig, WorkerRuntime

logger = logging.getLogger(__name__)

R = TypeVar("R")


def machine_node_id() -> UUID:
    """Stable identity of the machine this process runs on."""
    return uuid5(NAMESPACE_DNS, socket.gethostname())


class LocalCluster(Cluster):
    """
    Cluster whose workers all live in this process.

    Example:
        >>> with LocalCluster() as cluster:
        ...     node = cluster.add_node(device_count=2)
        ...     a = cluster.add_worker(node)
        ...     b = cluster.add_worker(node)
        ...     cluster.same_node(a.worker_id, b.worker_id)
        True
    """

    def __init__(self) -> None:
        self._workers: dict[int, WorkerRuntime] = {}
        self._nodes: dict[int, UUID] = {}
        self._lock = threading.RLock()
        self._stats = {
            "remote_calls": 0,
            "bytes_sent": 0,
            "bytes_received": 0,
        }

    def __enter__(self) -> LocalCluster:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.shutdown()

    @property
    def workers(self) -> list[int]:
        with self._lock:
            return sorted(self._workers)

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return self._stats.copy()

    def add_node(self, device_count: int = 2) -> EmulatedNode:
        """Create a machine with ``device_count`` emulated devices."""
        node = EmulatedNode(device_count)
        logger.debug(f"Added {node!r}")
        return node

    def add_worker(
        self,
        node: EmulatedNode,
        *,
        worker_id: int | None = None,
        config: RuntimeConfig | None = None,
        start: bool = True,
    ) -> WorkerRuntime:
        """Create and attach a worker seeing ``node``'s devices."""
        with self._lock:
            if worker_id is None:
                worker_id = max(self._workers, default=0) + 1
            runtime = WorkerRuntime(
                worker_id,
                config or RuntimeConfig(driver="emulated"),
                driver=EmulatedDriver(node=node),
                cluster=self,
            )
            self.attach(runtime, node.node_id)
        if start:
            runtime.start()
        return runtime

    def attach(self, runtime: WorkerRuntime, node_id: UUID | None = None) -> None:
        """Register an existing runtime as a worker of this cluster."""
        with self._lock:
            existing = self._workers.get(runtime.worker_id)
            if existing is not None and existing is not runtime:
                raise ValueError(f"Worker {runtime.worker_id} is already attached")
            self._workers[runtime.worker_id] = runtime
            self._nodes[runtime.worker_id] = node_id or machine_node_id()

    def worker(self, worker_id: int) -> WorkerRuntime:
        with self._lock:
            try:
                return self._workers[worker_id]
            except KeyError:
                raise KeyError(f"Worker {worker_id} is not part of this cluster") from None

    def node_id(self, worker_id: int) -> UUID:
        self.worker(worker_id)
        with self._lock:
            return self._nodes[worker_id]

    def processors(self, worker_id: int) -> set[Processor]:
        return self.worker(worker_id).processors()

    def remote_call(
        self,
        caller: int,
        worker_id: int,
        fn: Callable[..., R],
        *args: Any,
    ) -> R:
        target = self.worker(worker_id)
        if caller == worker_id:
            return fn(target, *args)

        request = wire.encode(list(args))
        response = wire.encode(fn(target, *wire.decode(request)))
        with self._lock:
            self._stats["remote_calls"] += 1
            self._stats["bytes_sent"] += len(request)
            self._stats["bytes_received"] += len(response)
        return wire.decode(response)

    def shutdown(self) -> None:
        """Shut down every attached worker."""
        with self._lock:
            runtimes = list(self._workers.values())
        for runtime in runtimes:
            runtime.shutdown()

    def __repr__(self) -> str:
        return f"LocalCluster(workers={self.workers})"
