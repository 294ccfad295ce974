"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest

from gpuplace.backends.cuda import _check_cuda_available
from gpuplace.backends.emulated import EmulatedDriver, EmulatedNode
from gpuplace.cluster.local import LocalCluster
from gpuplace.core.context import ContextGuard
from gpuplace.core.registry import DeviceRegistry
from gpuplace.core.runtime import RuntimeConfig, WorkerRuntime
from gpuplace.core.sync import SynchronizationBridge

# Configure pytest-asyncio
pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def driver() -> EmulatedDriver:
    """Provide an emulated driver with two devices on a private node."""
    return EmulatedDriver(device_count=2, seed=0)


@pytest.fixture
def registry(driver: EmulatedDriver) -> Generator[DeviceRegistry, None, None]:
    """Provide an initialized registry for worker 1."""
    reg = DeviceRegistry(driver, worker_id=1)
    reg.init()
    yield reg
    reg.shutdown()


@pytest.fixture
def guard(registry: DeviceRegistry) -> ContextGuard:
    return ContextGuard(registry)


@pytest.fixture
def bridge(registry: DeviceRegistry, guard: ContextGuard) -> SynchronizationBridge:
    return SynchronizationBridge(registry, guard)


@pytest.fixture
def runtime() -> Generator[WorkerRuntime, None, None]:
    """Provide a started standalone worker with two emulated devices."""
    config = RuntimeConfig(driver="emulated", emulated_devices=2)
    with WorkerRuntime(1, config) as rt:
        yield rt


@pytest.fixture
def cluster() -> Generator[LocalCluster, None, None]:
    """Provide an empty in-process cluster."""
    with LocalCluster() as c:
        yield c


@pytest.fixture
def node(cluster: LocalCluster) -> EmulatedNode:
    """Provide a node with two emulated devices."""
    return cluster.add_node(device_count=2)


# Markers for CUDA tests
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "cuda: mark test as requiring CUDA"
    )


def pytest_collection_modifyitems(
    config: pytest.Config,
    items: list[pytest.Item],
) -> None:
    """Skip CUDA tests if CUDA is not available."""
    if not _check_cuda_available():
        skip_cuda = pytest.mark.skip(reason="CUDA not available")
        for item in items:
            if "cuda" in item.keywords:
                item.add_marker(skip_cuda)
