"""
Unit tests for the ExecutionAdapter and task-local state.
"""

from __future__ import annotations

import threading
from uuid import uuid4

import numpy as np
import pytest

from gpuplace.core.descriptors import DeviceProcessor, HostProcessor
from gpuplace.core.executor import TaskLocalStore
from gpuplace.core.runtime import WorkerRuntime
from gpuplace.exceptions import ForeignPlacementError, TaskExecutionError


def _gpu(runtime: WorkerRuntime, device: int = 0) -> DeviceProcessor:
    return next(p for p in runtime.registry.processors() if p.device == device)


class TestTaskLocalStore:
    """Tests for TaskLocalStore class."""

    def test_set_get(self) -> None:
        store = TaskLocalStore("test_set_get")
        store.set("task", 7)

        assert store.get("task") == 7
        assert store.get("missing", "default") == "default"

    def test_snapshot_is_a_copy(self) -> None:
        """Test that a snapshot does not follow later changes."""
        store = TaskLocalStore("test_snapshot")
        store.set("task", 1)

        snapshot = store.snapshot()
        store.set("task", 2)

        assert snapshot == {"task": 1}

    def test_restore_and_clear(self) -> None:
        store = TaskLocalStore("test_restore")
        store.restore({"a": 1})
        assert store.get("a") == 1

        store.clear()
        assert store.snapshot() == {}


class TestExecutionAdapter:
    """Tests for ExecutionAdapter class."""

    def test_returns_result(self, runtime: WorkerRuntime) -> None:
        assert runtime.execute(_gpu(runtime), lambda a, b=0: a + b, 40, b=2) == 42

    def test_runs_on_a_dedicated_thread(self, runtime: WorkerRuntime) -> None:
        """Test that the closure runs on a named worker thread."""
        name = runtime.execute(_gpu(runtime, 1), lambda: threading.current_thread().name)

        assert name != threading.current_thread().name
        assert "GPU: 1" in name

    def test_device_context_is_active(self, runtime: WorkerRuntime) -> None:
        """Test that device processors see their context and stream as current."""
        gpu = _gpu(runtime, 1)

        context, stream = runtime.execute(gpu, runtime.driver.current)

        assert context is runtime.registry.context_for(1)
        assert stream is runtime.registry.stream_for(1)

    def test_host_processor_leaves_devices_inactive(self, runtime: WorkerRuntime) -> None:
        assert runtime.execute(runtime.host, runtime.driver.current) == (None, None)

    def test_caller_context_untouched(self, runtime: WorkerRuntime) -> None:
        before = runtime.driver.current()
        runtime.execute(_gpu(runtime), lambda: None)
        assert runtime.driver.current() == before

    def test_task_state_follows_task(self, runtime: WorkerRuntime) -> None:
        """Test that task-local state is captured by value for the new thread."""
        task_locals = runtime.executor.task_locals
        task_locals.set("task_id", "t-1")

        seen = runtime.execute(_gpu(runtime), lambda: task_locals.get("task_id"))

        assert seen == "t-1"

    def test_explicit_state(self, runtime: WorkerRuntime) -> None:
        task_locals = runtime.executor.task_locals

        seen = runtime.execute(
            runtime.host, lambda: task_locals.snapshot(), state={"options": {"x": 1}}
        )

        assert seen == {"options": {"x": 1}}

    def test_task_cannot_mutate_caller_state(self, runtime: WorkerRuntime) -> None:
        task_locals = runtime.executor.task_locals
        task_locals.set("task_id", "outer")

        runtime.execute(runtime.host, lambda: task_locals.set("task_id", "inner"))

        assert task_locals.get("task_id") == "outer"

    def test_exception_fidelity(self, runtime: WorkerRuntime) -> None:
        """Test that the original exception and its traceback reach the caller."""

        def failing_task() -> None:
            raise KeyError("missing input")

        with pytest.raises(TaskExecutionError) as exc_info:
            runtime.execute(_gpu(runtime), failing_task)

        error = exc_info.value
        assert isinstance(error.cause, KeyError)
        assert error.__cause__ is error.cause
        assert "failing_task" in error.traceback
        assert "missing input" in str(error)

    def test_foreign_processor_rejected(self, runtime: WorkerRuntime) -> None:
        with pytest.raises(ForeignPlacementError):
            runtime.execute(DeviceProcessor(2, 0, uuid4()), lambda: None)
        with pytest.raises(ForeignPlacementError):
            runtime.execute(HostProcessor(2), lambda: None)

    def test_result_buffer_usable_by_caller(self, runtime: WorkerRuntime) -> None:
        """Test that buffers produced by a task can be read back without extra steps."""
        gpu = _gpu(runtime)

        buf = runtime.execute(gpu, runtime.move, runtime.host, gpu, np.arange(3.0))

        np.testing.assert_array_equal(runtime.move(gpu, runtime.host, buf), np.arange(3.0))
