"""
Unit tests for LocalCluster.
"""

from __future__ import annotations

import numpy as np
import pytest

from gpuplace.backends.emulated import EmulatedNode
from gpuplace.cluster.local import LocalCluster, machine_node_id
from gpuplace.core.descriptors import HostProcessor
from gpuplace.core.runtime import RuntimeConfig, WorkerRuntime


def _echo(runtime: WorkerRuntime, value: object) -> object:
    return value


def _worker_id(runtime: WorkerRuntime) -> int:
    return runtime.worker_id


class TestLocalCluster:
    """Tests for LocalCluster class."""

    def test_add_worker_assigns_ids(self, cluster: LocalCluster, node: EmulatedNode) -> None:
        a = cluster.add_worker(node)
        b = cluster.add_worker(node)

        assert (a.worker_id, b.worker_id) == (1, 2)
        assert cluster.workers == [1, 2]
        assert a.is_active and b.is_active

    def test_node_identity(self, cluster: LocalCluster, node: EmulatedNode) -> None:
        a = cluster.add_worker(node)
        b = cluster.add_worker(node)
        c = cluster.add_worker(cluster.add_node())

        assert cluster.node_id(a.worker_id) == node.node_id
        assert cluster.same_node(a.worker_id, b.worker_id)
        assert not cluster.same_node(a.worker_id, c.worker_id)

    def test_processors(self, cluster: LocalCluster, node: EmulatedNode) -> None:
        worker = cluster.add_worker(node, worker_id=5)

        procs = cluster.processors(5)

        assert HostProcessor(5) in procs
        assert procs == worker.processors()

    def test_workers_on_one_node_share_device_uuids(
        self, cluster: LocalCluster, node: EmulatedNode
    ) -> None:
        a = cluster.add_worker(node)
        b = cluster.add_worker(node)

        assert {p.device_uuid for p in a.registry.processors()} == {
            p.device_uuid for p in b.registry.processors()
        }

    def test_duplicate_worker_rejected(self, cluster: LocalCluster, node: EmulatedNode) -> None:
        cluster.add_worker(node, worker_id=1)

        with pytest.raises(ValueError):
            cluster.add_worker(node, worker_id=1)

    def test_unknown_worker(self, cluster: LocalCluster) -> None:
        with pytest.raises(KeyError):
            cluster.worker(42)

    def test_remote_call_crosses_wire(self, cluster: LocalCluster, node: EmulatedNode) -> None:
        """Test that values handed to another worker arrive as copies."""
        a = cluster.add_worker(node)
        b = cluster.add_worker(node)
        value = np.arange(3.0)

        result = cluster.remote_call(a.worker_id, b.worker_id, _echo, value)

        np.testing.assert_array_equal(result, value)
        assert result is not value
        assert cluster.stats["remote_calls"] == 1
        assert cluster.stats["bytes_sent"] > 0

    def test_remote_call_runs_on_target(self, cluster: LocalCluster, node: EmulatedNode) -> None:
        a = cluster.add_worker(node)
        b = cluster.add_worker(node)

        assert cluster.remote_call(a.worker_id, b.worker_id, _worker_id) == b.worker_id

    def test_self_call_skips_wire(self, cluster: LocalCluster, node: EmulatedNode) -> None:
        a = cluster.add_worker(node)
        value = np.arange(3.0)

        assert cluster.remote_call(a.worker_id, a.worker_id, _echo, value) is value
        assert cluster.stats["remote_calls"] == 0

    def test_remote_errors_propagate(self, cluster: LocalCluster, node: EmulatedNode) -> None:
        a = cluster.add_worker(node)
        b = cluster.add_worker(node)

        def fail(runtime: WorkerRuntime) -> None:
            raise RuntimeError("worker died")

        with pytest.raises(RuntimeError, match="worker died"):
            cluster.remote_call(a.worker_id, b.worker_id, fail)

    def test_shutdown_stops_workers(self, node: EmulatedNode) -> None:
        cluster = LocalCluster()
        worker = cluster.add_worker(node)

        cluster.shutdown()

        assert not worker.is_active

    def test_standalone_runtime_uses_machine_node(self) -> None:
        with WorkerRuntime(1, RuntimeConfig(driver="emulated")) as runtime:
            assert runtime.cluster.node_id(1) == machine_node_id()
