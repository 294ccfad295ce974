"""
gpuplace - accelerator placement for distributed task schedulers.

Exposes each worker's GPUs as schedulable processors and memory spaces,
and moves data between host memory and device memory across devices,
workers and machines, picking the cheapest correct path every time.

Core Features:
    - Device Registry: one context and stream per device, per worker
    - Data Mover: host, peer, IPC and cross-node transfers behind one call
    - Stream Affinity: buffers remember their writer; readers sync only when needed
    - Routine Substitution: host numeric routines swapped for vendor ones on devices
    - Emulated Driver: the full protocol on CPU when CUDA is unavailable

Quick Start:
    >>> import numpy as np
    >>> from gpuplace import LocalCluster
    >>>
    >>> with LocalCluster() as cluster:
    ...     node = cluster.add_node(device_count=2)
    ...     worker = cluster.add_worker(node)
    ...     gpu = min(worker.registry.processors(), key=lambda p: p.device)
    ...     buf = worker.move(worker.host, gpu, np.arange(4.0))
    ...     worker.move(gpu, worker.host, buf)
    array([0., 1., 2., 3.])
"""

from gpuplace.backends.base import AllocationIntent
from gpuplace.cluster.base import Cluster
from gpuplace.cluster.local import LocalCluster
from gpuplace.core.buffer import DeviceBuffer
from gpuplace.core.chunk import Chunk
from gpuplace.core.descriptors import (
    DeviceMemorySpace,
    DeviceProcessor,
    HostMemorySpace,
    HostProcessor,
)
from gpuplace.core.mover import Route
from gpuplace.core.runtime import RuntimeConfig, WorkerRuntime

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Descriptors
    "HostProcessor",
    "HostMemorySpace",
    "DeviceProcessor",
    "DeviceMemorySpace",
    # Data
    "AllocationIntent",
    "Chunk",
    "DeviceBuffer",
    "Route",
    # Runtime
    "RuntimeConfig",
    "WorkerRuntime",
    # Cluster
    "Cluster",
    "LocalCluster",
]
