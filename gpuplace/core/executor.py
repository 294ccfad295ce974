"""
Execution adapter: runs task closures on a thread bound to a device.
"""

from __future__ import annotations

import contextvars
import logging
import threading
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any, TypeVar

from gpuplace.core.context import ContextGuard
from gpuplace.core.descriptors import DeviceProcessor, Processor, short_name
from gpuplace.core.registry import DeviceRegistry
from gpuplace.exceptions import ForeignPlacementError, TaskExecutionError

logger = logging.getLogger(__name__)

R = TypeVar("R")

_EMPTY: Mapping[str, Any] = MappingProxyType({})


class TaskLocalStore:
    """
    Scheduler bookkeeping that follows a task onto its execution thread.

    State is a flat mapping held in a context variable. ``snapshot`` copies
    it by value so the spawned thread never shares the caller's mapping.
    """

    def __init__(self, name: str = "gpuplace_task_locals") -> None:
        self._var: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar(
            name, default=_EMPTY
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self._var.get().get(key, default)

    def set(self, key: str, value: Any) -> None:
        state = dict(self._var.get())
        state[key] = value
        self._var.set(MappingProxyType(state))

    def snapshot(self) -> dict[str, Any]:
        """Capture the current state by value."""
        return dict(self._var.get())

    def restore(self, state: Mapping[str, Any]) -> None:
        """Install a captured state in the current thread."""
        self._var.set(MappingProxyType(dict(state)))

    def clear(self) -> None:
        self._var.set(_EMPTY)


class ExecutionAdapter:
    """
    Runs closures for a processor and hands back their result.

    Each call spawns one thread that restores the caller's task-local
    state, activates the processor's context and runs the closure. The
    caller blocks until it finishes. Buffers in the result are returned
    without synchronization: whoever reads them next orders itself after
    their stream.

    Example:
        >>> adapter.execute(gpu0, lambda x: x + 1, 41)
        42
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        guard: ContextGuard,
        task_locals: TaskLocalStore,
        *,
        thread_name_prefix: str = "gpuplace_task",
    ) -> None:
        self._registry = registry
        self._guard = guard
        self._task_locals = task_locals
        self._thread_name_prefix = thread_name_prefix

    @property
    def task_locals(self) -> TaskLocalStore:
        return self._task_locals

    def execute(
        self,
        proc: Processor,
        fn: Callable[..., R],
        *args: Any,
        state: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> R:
        """
        Run ``fn(*args, **kwargs)`` on ``proc`` and wait for the result.

        Args:
            proc: Processor owned by this worker.
            fn: Task closure.
            *args: Positional arguments for ``fn``.
            state: Task-local state to install; defaults to a snapshot of
                the caller's.
            **kwargs: Keyword arguments for ``fn``.

        Returns:
            Whatever ``fn`` returned.

        Raises:
            TaskExecutionError: If ``fn`` raised; the original exception is
                its ``cause`` and ``__cause__``.
        """
        if proc.owner != self._registry.worker_id:
            raise ForeignPlacementError(proc, self._registry.worker_id)

        captured = dict(state) if state is not None else self._task_locals.snapshot()
        outcome: dict[str, Any] = {}

        def run() -> None:
            self._task_locals.restore(captured)
            try:
                if isinstance(proc, DeviceProcessor):
                    self._guard.activate(proc)
                outcome["result"] = fn(*args, **kwargs)
            except BaseException as e:
                outcome["error"] = e

        thread = threading.Thread(
            target=run,
            name=f"{self._thread_name_prefix} [{short_name(proc)}]",
            daemon=True,
        )
        thread.start()
        thread.join()

        if "error" in outcome:
            error = outcome["error"]
            logger.debug(f"Task on {proc!r} raised {type(error).__name__}: {error}")
            raise TaskExecutionError(proc, error) from error
        return outcome["result"]
