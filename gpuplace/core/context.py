"""
Scoped activation of device contexts and streams.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

from gpuplace.core.descriptors import DeviceMemorySpace, DeviceProcessor
from gpuplace.core.registry import DeviceRegistry
from gpuplace.exceptions import ForeignPlacementError

R = TypeVar("R")

Target = DeviceProcessor | DeviceMemorySpace | int


class ContextGuard:
    """
    Makes a device's context and stream current for the calling thread.

    The current context and stream are thread-local, so nested and
    per-thread activations never disturb each other.
    """

    def __init__(self, registry: DeviceRegistry) -> None:
        self._registry = registry

    def _device(self, target: Target) -> int:
        if isinstance(target, (DeviceProcessor, DeviceMemorySpace)):
            if target.owner != self._registry.worker_id:
                raise ForeignPlacementError(target, self._registry.worker_id)
            return target.device
        return int(target)

    def activate(self, target: Target) -> None:
        """Make ``target``'s context and stream current. Not scoped."""
        device = self._device(target)
        self._registry.driver.make_current(
            self._registry.context_for(device),
            self._registry.stream_for(device),
        )

    @contextmanager
    def using(self, target: Target) -> Iterator[None]:
        """Activate ``target`` for the duration of a ``with`` block."""
        driver = self._registry.driver
        saved_context, saved_stream = driver.current()
        try:
            self.activate(target)
            yield
        finally:
            driver.make_current(saved_context, saved_stream)

    def with_context(self, fn: Callable[..., R], target: Target, *args: object, **kwargs: object) -> R:
        """Call ``fn`` with ``target`` active, restoring the previous context afterwards."""
        with self.using(target):
            return fn(*args, **kwargs)
