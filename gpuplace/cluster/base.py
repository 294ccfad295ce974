"""
Cluster interface.

The topology and remote-invocation services the data mover relies on.
A real deployment backs this with its distributed runtime; LocalCluster
provides an in-process implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID

if TYPE_CHECKING:
    from gpuplace.core.descriptors import Processor
    from gpuplace.core.runtime import WorkerRuntime

R = TypeVar("R")


class Cluster(ABC):
    """Abstract base class for worker topologies."""

    @abstractmethod
    def node_id(self, worker_id: int) -> UUID:
        """Get a stable identity for the physical machine hosting ``worker_id``."""
        ...

    @abstractmethod
    def processors(self, worker_id: int) -> set[Processor]:
        """Get every processor available on ``worker_id``."""
        ...

    @abstractmethod
    def remote_call(
        self,
        caller: int,
        worker_id: int,
        fn: Callable[..., R],
        *args: Any,
    ) -> R:
        """
        Run ``fn(runtime, *args)`` on ``worker_id`` and return its result.

        ``runtime`` is the target worker's WorkerRuntime. Failures raised by
        ``fn`` propagate to the caller unchanged; nothing is retried.
        """
        ...

    def same_node(self, a: int, b: int) -> bool:
        """Check if two workers share a physical machine."""
        return self.node_id(a) == self.node_id(b)
