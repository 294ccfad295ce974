"""
gpuplace exception hierarchy.

This module defines the complete exception hierarchy for gpuplace,
providing specific exception types for different error categories:

- DeviceError: Device lookup and placement ownership issues
- BufferError: Device buffer lifetime problems
- ChunkError: Missing values in a worker's chunk store
- TransferError: Failed data movement between memory spaces
- ExecutionError: Failures raised by task closures
- BackendError: Native driver availability and execution
- ValidationError: Configuration errors
- WireError: Encoding values that cross a worker boundary

All exceptions inherit from GpuPlaceError for easy catching.
"""

from __future__ import annotations

import traceback
from typing import Any


class GpuPlaceError(Exception):
    """Base exception for all gpuplace errors."""

    pass


class DeviceError(GpuPlaceError):
    """Base exception for device-related errors."""

    pass


class DeviceNotFoundError(DeviceError):
    """Raised when a device ordinal is not registered on this worker."""

    def __init__(self, device: int, available: list[int] | None = None) -> None:
        self.device = device
        self.available = available or []
        msg = f"Device {device} is not registered."
        if self.available:
            msg += f" Registered devices: {self.available}"
        else:
            msg += " No devices are registered on this worker."
        super().__init__(msg)


class ForeignPlacementError(DeviceError):
    """Raised when activating a descriptor owned by another worker."""

    def __init__(self, target: object, worker_id: int) -> None:
        self.target = target
        self.worker_id = worker_id
        super().__init__(f"{target!r} is not owned by worker {worker_id}")


class BufferError(GpuPlaceError):
    """Base exception for buffer-related errors."""

    pass


class BufferReleasedError(BufferError):
    """Raised when accessing a buffer whose memory was already released."""

    def __init__(self) -> None:
        super().__init__("Buffer has been released and can no longer be accessed.")


class ChunkError(GpuPlaceError):
    """Base exception for chunk store errors."""

    pass


class ChunkNotFoundError(ChunkError):
    """Raised when a chunk reference is not held by its owning worker."""

    def __init__(self, ref: object, worker_id: int) -> None:
        self.ref = ref
        self.worker_id = worker_id
        super().__init__(f"Chunk {ref} is not stored on worker {worker_id}")


class TransferError(GpuPlaceError):
    """Raised when moving a value between memory spaces fails."""

    def __init__(
        self,
        source: object,
        destination: object,
        cause: BaseException,
        route: str | None = None,
    ) -> None:
        self.source = source
        self.destination = destination
        self.cause = cause
        self.route = route
        via = f" via {route}" if route else ""
        super().__init__(f"Failed to move value from {source!r} to {destination!r}{via}: {cause}")


class IpcHandleError(TransferError):
    """Raised when exporting or opening an IPC memory handle fails."""

    pass


class ExecutionError(GpuPlaceError):
    """Base exception for task execution errors."""

    pass


class TaskExecutionError(ExecutionError):
    """
    Raised to the caller when a task closure fails on its worker thread.

    The original exception is available as ``cause`` (and as ``__cause__``),
    and its formatted traceback as ``traceback``.
    """

    def __init__(self, processor: object, cause: BaseException) -> None:
        self.processor = processor
        self.cause = cause
        self.traceback = "".join(
            traceback.format_exception(type(cause), cause, cause.__traceback__)
        )
        super().__init__(
            f"Task failed on {processor!r}: {type(cause).__name__}: {cause}"
        )


class BackendError(GpuPlaceError):
    """Base exception for backend-related errors."""

    pass


class BackendNotAvailableError(BackendError):
    """Raised when a requested backend is not available."""

    def __init__(self, backend_name: str, reason: str) -> None:
        self.backend_name = backend_name
        self.reason = reason
        super().__init__(f"Backend '{backend_name}' is not available: {reason}")


class CUDAError(BackendError):
    """Raised for CUDA-specific errors."""

    pass


class ValidationError(GpuPlaceError):
    """Base exception for validation-related errors."""

    pass


class InvalidConfigurationError(ValidationError):
    """Raised when configuration is invalid."""

    def __init__(self, parameter: str, value: object, reason: str) -> None:
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid configuration: {parameter}={value!r} - {reason}")


class WireError(GpuPlaceError):
    """Base exception for cross-worker encoding errors."""

    pass


class WireEncodeError(WireError):
    """Raised when a value cannot be encoded for another worker."""

    def __init__(self, value: Any, cause: Exception) -> None:
        self.value_type = type(value)
        self.cause = cause
        super().__init__(f"Failed to encode value of type '{self.value_type.__name__}': {cause}")


class WireDecodeError(WireError):
    """Raised when a payload from another worker cannot be decoded."""

    def __init__(self, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"Failed to decode payload: {cause}")
