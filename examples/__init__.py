"""
gpuplace examples.
"""

from examples.cluster_transfers import run_cluster_example

__all__ = [
    "run_cluster_example",
]
