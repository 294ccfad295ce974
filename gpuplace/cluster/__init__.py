"""
Cluster topology and remote invocation for gpuplace.
"""

from gpuplace.cluster.base import Cluster
from gpuplace.cluster.local import LocalCluster, machine_node_id

__all__ = [
    "Cluster",
    "LocalCluster",
    "machine_node_id",
]
