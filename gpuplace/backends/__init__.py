"""
Native device drivers for gpuplace.

CuPy is only imported when a CUDADriver is constructed.
"""

from gpuplace.backends.base import AllocationIntent, DeviceInfo, Driver, DriverType, IpcMemHandle
from gpuplace.backends.cuda import CUDADriver
from gpuplace.backends.emulated import EmulatedDriver, EmulatedNode

__all__ = [
    "AllocationIntent",
    "CUDADriver",
    "DeviceInfo",
    "Driver",
    "DriverType",
    "EmulatedDriver",
    "EmulatedNode",
    "IpcMemHandle",
]
