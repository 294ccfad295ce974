"""
Stream ordering between devices.

Cross-device ordering is expressed with events: the producer's stream
records one and the consumer's stream waits on it, so neither the host nor
unrelated work on either stream is blocked. Values that crossed a worker
boundary were synchronized by that crossing and need nothing further.
"""

from __future__ import annotations

import logging
from typing import Any

from gpuplace.core.context import ContextGuard
from gpuplace.core.descriptors import (
    DeviceMemorySpace,
    DeviceProcessor,
    as_space,
    root_worker_id,
)
from gpuplace.core.registry import DeviceRegistry

logger = logging.getLogger(__name__)


class SynchronizationBridge:
    """Establishes happens-before edges between device streams."""

    def __init__(self, registry: DeviceRegistry, guard: ContextGuard) -> None:
        self._registry = registry
        self._guard = guard

    def sync_local(self, x: DeviceProcessor | DeviceMemorySpace) -> None:
        """Fully synchronize ``x``'s device if this worker owns it."""
        if root_worker_id(x) != self._registry.worker_id:
            return
        self._guard.with_context(self._registry.driver.synchronize, x)

    def sync_cross(
        self,
        from_space: DeviceProcessor | DeviceMemorySpace,
        to_space: DeviceProcessor | DeviceMemorySpace,
    ) -> Any:
        """
        Order ``to_space``'s stream after all work already issued on ``from_space``'s.

        Returns:
            The recorded event, or None when the spaces live on different workers.

        Raises:
            TypeError: If either side is not a device placement.
        """
        from_space = as_space(from_space)
        to_space = as_space(to_space)
        if not isinstance(from_space, DeviceMemorySpace) or not isinstance(to_space, DeviceMemorySpace):
            raise TypeError(f"Stream ordering needs two device spaces, got {from_space!r} and {to_space!r}")

        if root_worker_id(from_space) != root_worker_id(to_space):
            self.sync_local(from_space)
            return None

        if from_space.device == to_space.device:
            raise ValueError(f"Cannot order {from_space!r} against itself")

        driver = self._registry.driver
        event = self._guard.with_context(
            driver.record_event, from_space, self._registry.stream_for(from_space.device)
        )
        self._guard.with_context(
            driver.wait_event, to_space, self._registry.stream_for(to_space.device), event
        )
        logger.debug(f"Stream edge device {from_space.device} -> device {to_space.device}")
        return event
