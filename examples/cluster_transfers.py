"""
Cluster Transfer Example for gpuplace.

Places one array on a GPU of worker 1, then reads it from a second worker
on the same machine (IPC alias) and from a worker on another machine
(host round trip). Runs entirely on the emulated driver.
"""

from __future__ import annotations

import logging

import numpy as np

from gpuplace import LocalCluster, WorkerRuntime
from gpuplace.core.descriptors import DeviceProcessor


def first_gpu(runtime: WorkerRuntime) -> DeviceProcessor:
    return min(runtime.registry.processors(), key=lambda p: p.device)


def run_cluster_example() -> None:
    """Move one buffer through every cross-worker route."""
    with LocalCluster() as cluster:
        machine_a = cluster.add_node(device_count=2)
        machine_b = cluster.add_node(device_count=1)

        owner = cluster.add_worker(machine_a)
        neighbour = cluster.add_worker(machine_a)
        remote = cluster.add_worker(machine_b)

        src_gpu = first_gpu(owner)
        buf = owner.move(owner.host, src_gpu, np.linspace(0.0, 1.0, 5))
        chunk = owner.put(buf)

        for worker in (neighbour, remote):
            dst_gpu = first_gpu(worker)
            route = worker.mover.classify(src_gpu, dst_gpu)
            moved = worker.move(src_gpu, dst_gpu, chunk)
            values = worker.move(dst_gpu, worker.host, moved)
            print(f"worker {worker.worker_id} via {route.name}: {values} (alias={moved.is_alias})")
            moved.release()

        # Task closures run on a thread bound to the device
        total = owner.execute(src_gpu, lambda: float(owner.move(src_gpu, owner.host, buf).sum()))
        print(f"Sum computed on {src_gpu}: {total}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_cluster_example()
