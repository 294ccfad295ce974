"""
Unit tests for native drivers.
"""

from __future__ import annotations

import subprocess
import sys
from types import SimpleNamespace

import numpy as np
import pytest

from gpuplace.backends.base import AllocationIntent, DriverType
from gpuplace.backends.emulated import EmulatedDriver, EmulatedNode
from gpuplace.exceptions import BackendError

_WRITE_THROUGH_HANDLE = """
import sys

from gpuplace.backends.cuda import CUDADriver
from gpuplace.cluster import wire

handle = wire.decode(bytes.fromhex(sys.argv[1]))
driver = CUDADriver()
info = next(d for d in driver.devices() if d.uuid == handle.device_uuid)
alias, close = driver.open_ipc(handle, info)
with info.handle:
    alias.fill(-1.0)
    info.handle.synchronize()
close()
"""


@pytest.fixture
def active(driver: EmulatedDriver) -> EmulatedDriver:
    """Driver with device 0 current on the calling thread."""
    info = driver.devices()[0]
    context = driver.create_context(info)
    driver.make_current(context, driver.create_stream(context))
    return driver


class TestEmulatedDriver:
    """Tests for EmulatedDriver class."""

    def test_properties(self, driver: EmulatedDriver) -> None:
        assert driver.driver_type == DriverType.EMULATED
        assert driver.name == "emulated"
        assert driver.is_available
        assert [d.ordinal for d in driver.devices()] == [0, 1]

    def test_device_uuids_are_distinct_and_stable(self, driver: EmulatedDriver) -> None:
        first = [d.uuid for d in driver.devices()]
        assert len(set(first)) == 2
        assert [d.uuid for d in driver.devices()] == first

    def test_no_devices(self) -> None:
        driver = EmulatedDriver(device_count=0)
        assert not driver.is_available
        assert driver.devices() == []

    def test_shared_node(self) -> None:
        """Test that drivers on one node see the same devices."""
        node = EmulatedNode(2)
        a = EmulatedDriver(node=node)
        b = EmulatedDriver(node=node)

        assert [d.uuid for d in a.devices()] == [d.uuid for d in b.devices()]

    def test_requires_current_context(self, driver: EmulatedDriver) -> None:
        with pytest.raises(BackendError):
            driver.to_device(np.zeros(2))

    def test_copies_are_deferred(self, active: EmulatedDriver) -> None:
        """Test that device writes land only when the stream is drained."""
        arr = active.allocator(AllocationIntent.ZEROS)((3,), np.float64)
        active.copy(arr, np.ones(3))

        assert np.all(arr._mem == 0)
        active.synchronize()
        assert np.all(arr._mem == 1)

    def test_download_is_synchronizing(self, active: EmulatedDriver) -> None:
        arr = active.to_device(np.arange(3.0))
        np.testing.assert_array_equal(active.to_host(arr), np.arange(3.0))

    @pytest.mark.parametrize("value", [{"alpha": 0.5}, [1, None], np.array([None, 1])])
    def test_object_values_rejected(self, active: EmulatedDriver, value: object) -> None:
        with pytest.raises(TypeError):
            active.to_device(value)
        assert active.stats["allocations"] == 0

    def test_copy_shape_mismatch(self, active: EmulatedDriver) -> None:
        arr = active.allocator(AllocationIntent.UNDEF)((3,), np.float64)
        with pytest.raises(ValueError):
            active.copy(arr, np.zeros(4))

    def test_event_query(self, active: EmulatedDriver) -> None:
        _, stream = active.current()
        stream.enqueue(lambda: None)

        event = active.record_event(stream)

        assert not event.query()
        event.synchronize()
        assert event.query()

    def test_wait_event_orders_streams(self, active: EmulatedDriver) -> None:
        """Test that a waiting stream drains the producer up to the event first."""
        context, producer = active.current()
        consumer = active.create_stream(context)
        order: list[str] = []
        producer.enqueue(lambda: order.append("produce"))
        event = active.record_event(producer)
        producer.enqueue(lambda: order.append("later"))

        active.wait_event(consumer, event)
        consumer.enqueue(lambda: order.append("consume"))
        consumer.synchronize()

        assert order == ["produce", "consume"]

    def test_seeded_rand(self) -> None:
        """Test that a seed makes random intents reproducible."""
        results = []
        for _ in range(2):
            driver = EmulatedDriver(device_count=1, seed=42)
            info = driver.devices()[0]
            context = driver.create_context(info)
            driver.make_current(context, driver.create_stream(context))
            results.append(driver.to_host(driver.allocator(AllocationIntent.RANDN)((4,), np.float64)))

        np.testing.assert_array_equal(results[0], results[1])

    def test_ipc_export_and_open(self, active: EmulatedDriver) -> None:
        """Test that an opened handle aliases the exported memory."""
        info = active.devices()[0]
        arr = active.to_device(np.arange(4.0))
        active.synchronize()

        handle = active.export_ipc(arr, info)
        alias, close = active.open_ipc(handle, info)
        alias._mem[0] = 10.0

        assert handle.device_uuid == info.uuid
        assert handle.nbytes == arr.nbytes
        assert arr._mem[0] == 10.0
        close()
        assert active.stats["ipc_closes"] == 1

    def test_open_unknown_device(self, active: EmulatedDriver) -> None:
        info = active.devices()[0]
        handle = active.export_ipc(active.to_device(np.zeros(1)), info)
        other = EmulatedDriver(device_count=1)

        with pytest.raises(LookupError):
            other.open_ipc(handle, other.devices()[0])

    def test_free_unpublishes(self, active: EmulatedDriver) -> None:
        info = active.devices()[0]
        arr = active.to_device(np.zeros(1))
        handle = active.export_ipc(arr, info)

        active.free(arr)

        with pytest.raises(LookupError):
            active.open_ipc(handle, info)


@pytest.mark.cuda
class TestCUDADriver:
    """Tests for CUDADriver class."""

    def test_round_trip(self) -> None:
        from gpuplace.backends.cuda import CUDADriver

        driver = CUDADriver()
        info = driver.devices()[0]
        context = driver.create_context(info)
        driver.make_current(context, driver.create_stream(context))

        arr = driver.to_device(np.arange(4.0))
        driver.synchronize()

        assert driver.device_of(arr) == info.ordinal
        np.testing.assert_array_equal(driver.to_host(arr), np.arange(4.0))

    def test_default_routines(self) -> None:
        from gpuplace.backends.cuda import CUDADriver

        routines = dict(CUDADriver().default_routines())
        assert np.matmul in routines

    def test_export_offset_inside_pool_block(self) -> None:
        """Test that a view into a pooled block is exported relative to the block."""
        from gpuplace.backends.cuda import CUDADriver

        driver = CUDADriver()
        info = driver.devices()[0]
        context = driver.create_context(info)
        driver.make_current(context, driver.create_stream(context))

        whole = driver.to_device(np.zeros(4096))
        view = whole[1024:1032]
        driver.synchronize()

        whole_handle = driver.export_ipc(whole, info)
        view_handle = driver.export_ipc(view, info)

        assert driver._allocation_base(view.data.ptr) == driver._allocation_base(whole.data.ptr)
        assert view_handle.offset == whole_handle.offset + 1024 * 8
        assert view_handle.nbytes == 64

    def test_alias_writes_into_sub_allocation(self) -> None:
        """Test that another process writes exactly the exported view."""
        from gpuplace.backends.cuda import CUDADriver
        from gpuplace.cluster import wire

        driver = CUDADriver()
        info = driver.devices()[0]
        context = driver.create_context(info)
        driver.make_current(context, driver.create_stream(context))

        whole = driver.to_device(np.zeros(4096))
        view = whole[1024:1032]
        driver.synchronize()
        handle = driver.export_ipc(view, info)

        # Handles cannot be opened by the process that exported them
        result = subprocess.run(
            [sys.executable, "-c", _WRITE_THROUGH_HANDLE, wire.encode(handle).hex()],
            capture_output=True,
            text=True,
            timeout=120,
        )
        assert result.returncode == 0, result.stderr

        expected = np.zeros(4096)
        expected[1024:1032] = -1.0
        np.testing.assert_array_equal(driver.to_host(whole), expected)


class TestCUDAAvailability:
    """Tests for CUDA detection without a GPU."""

    def test_missing_cupy(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from gpuplace.backends.cuda import _check_cuda_available

        monkeypatch.setitem(sys.modules, "cupy", None)

        assert _check_cuda_available() is False

    def test_driver_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a broken driver install reads as unavailable."""
        from gpuplace.backends.cuda import _check_cuda_available

        def no_driver() -> int:
            raise RuntimeError("cudaErrorInsufficientDriver")

        fake = SimpleNamespace(cuda=SimpleNamespace(runtime=SimpleNamespace(getDeviceCount=no_driver)))
        monkeypatch.setitem(sys.modules, "cupy", fake)

        assert _check_cuda_available() is False
