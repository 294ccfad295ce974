"""
Core abstractions for gpuplace.
"""

from gpuplace.core.buffer import DeviceBuffer, IpcAlias, MemorySpan
from gpuplace.core.chunk import Chunk, ChunkKind, ChunkStore
from gpuplace.core.context import ContextGuard
from gpuplace.core.descriptors import (
    DeviceMemorySpace,
    DeviceProcessor,
    HostMemorySpace,
    HostProcessor,
)
from gpuplace.core.executor import ExecutionAdapter, TaskLocalStore
from gpuplace.core.mover import DataMover, Route
from gpuplace.core.registry import DeviceRegistry
from gpuplace.core.routines import RoutineTable
from gpuplace.core.runtime import RuntimeConfig, WorkerRuntime
from gpuplace.core.sync import SynchronizationBridge

__all__ = [
    "Chunk",
    "ChunkKind",
    "ChunkStore",
    "ContextGuard",
    "DataMover",
    "DeviceBuffer",
    "DeviceMemorySpace",
    "DeviceProcessor",
    "DeviceRegistry",
    "ExecutionAdapter",
    "HostMemorySpace",
    "HostProcessor",
    "IpcAlias",
    "MemorySpan",
    "Route",
    "RoutineTable",
    "RuntimeConfig",
    "SynchronizationBridge",
    "TaskLocalStore",
    "WorkerRuntime",
]
