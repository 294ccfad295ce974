"""
Unit tests for the exception hierarchy.
"""

from __future__ import annotations

from uuid import uuid4

import pytest

from gpuplace.core.descriptors import HostProcessor
from gpuplace.exceptions import (
    BackendNotAvailableError,
    DeviceError,
    DeviceNotFoundError,
    ForeignPlacementError,
    GpuPlaceError,
    InvalidConfigurationError,
    IpcHandleError,
    TaskExecutionError,
    TransferError,
)


class TestExceptions:
    """Tests for exception types."""

    @pytest.mark.parametrize(
        "error",
        [
            DeviceNotFoundError(3, [0, 1]),
            ForeignPlacementError(HostProcessor(2), 1),
            TransferError("a", "b", RuntimeError("x")),
            BackendNotAvailableError("CUDA", "no driver"),
            InvalidConfigurationError("driver", "tpu", "unknown"),
        ],
    )
    def test_all_derive_from_base(self, error: GpuPlaceError) -> None:
        assert isinstance(error, GpuPlaceError)

    def test_device_not_found_message(self) -> None:
        assert "Registered devices: [0, 1]" in str(DeviceNotFoundError(3, [0, 1]))
        assert "No devices" in str(DeviceNotFoundError(0))
        assert isinstance(DeviceNotFoundError(0), DeviceError)

    def test_transfer_error_fields(self) -> None:
        cause = RuntimeError("peer access denied")
        error = IpcHandleError("src", "dst", cause, "IPC")

        assert isinstance(error, TransferError)
        assert error.cause is cause
        assert error.route == "IPC"
        assert "via IPC" in str(error)

    def test_task_execution_traceback(self) -> None:
        try:
            raise ValueError(str(uuid4()))
        except ValueError as e:
            error = TaskExecutionError(HostProcessor(1), e)

        assert error.processor == HostProcessor(1)
        assert "ValueError" in error.traceback
