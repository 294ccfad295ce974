"""
CUDA driver for gpuplace.

Provides the CUDA implementation of the driver interface using CuPy.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid5

import numpy as np

from gpuplace.backends.base import (
    AllocationIntent,
    Allocator,
    DeviceInfo,
    Driver,
    DriverType,
    IpcMemHandle,
)
from gpuplace.exceptions import BackendNotAvailableError, CUDAError

if TYPE_CHECKING:
    from numpy.typing import NDArray


logger = logging.getLogger(__name__)

# Namespace for uuids derived from the PCI location on drivers that do not
# report a hardware uuid.
_PCI_NAMESPACE = UUID("6ba7b812-9dad-11d1-80b4-00c04fd430c8")


def _load_libcuda() -> ctypes.CDLL:
    """Load the CUDA driver library."""
    name = ctypes.util.find_library("cuda") or ctypes.util.find_library("nvcuda") or "libcuda.so.1"
    try:
        lib = ctypes.CDLL(name)
    except OSError as e:
        raise CUDAError(f"Cannot load the CUDA driver library {name!r}: {e}") from e

    lib.cuMemGetAddressRange_v2.argtypes = [
        ctypes.POINTER(ctypes.c_uint64),
        ctypes.POINTER(ctypes.c_size_t),
        ctypes.c_uint64,
    ]
    lib.cuMemGetAddressRange_v2.restype = ctypes.c_int
    return lib


def _check_cuda_available() -> bool:
    """Check if CUDA is available."""
    try:
        import cupy as cp

        return cp.cuda.runtime.getDeviceCount() > 0
    except ImportError:
        return False
    except Exception:  # CuPy present without a usable driver or device
        return False


class CUDADriver(Driver):
    """
    CUDA driver implementation using CuPy.

    Contexts are the devices' primary contexts; streams are non-blocking
    CuPy streams, one per device, created by the registry.

    Example:
        >>> driver = CUDADriver()
        >>> if driver.is_available:
        ...     print([d.name for d in driver.devices()])
    """

    def __init__(self) -> None:
        """
        Initialize the CUDA driver.

        Raises:
            BackendNotAvailableError: If CuPy is not installed.
        """
        self._cuda_available = _check_cuda_available()
        self._cp: Any = None
        self._libcuda: ctypes.CDLL | None = None

        try:
            import cupy as cp

            self._cp = cp
        except ImportError as e:
            self._cuda_available = False
            raise BackendNotAvailableError(
                "CUDA",
                f"Required packages not installed: {e}",
            ) from e

    @property
    def driver_type(self) -> DriverType:
        return DriverType.CUDA

    @property
    def is_available(self) -> bool:
        return self._cuda_available

    def devices(self) -> list[DeviceInfo]:
        if not self._cuda_available:
            return []

        runtime = self._cp.cuda.runtime
        found = []
        for ordinal in range(runtime.getDeviceCount()):
            props = runtime.getDeviceProperties(ordinal)
            name = props["name"]
            if isinstance(name, bytes):
                name = name.decode()
            found.append(
                DeviceInfo(
                    ordinal=ordinal,
                    uuid=self._device_uuid(ordinal, props),
                    name=name,
                    handle=self._cp.cuda.Device(ordinal),
                )
            )
        return found

    @staticmethod
    def _device_uuid(ordinal: int, props: dict[str, Any]) -> UUID:
        raw = props.get("uuid")
        if isinstance(raw, bytes) and len(raw) == 16:
            return UUID(bytes=raw)
        location = f"{props.get('pciDomainID', 0)}:{props.get('pciBusID', 0)}:{props.get('pciDeviceID', ordinal)}"
        return uuid5(_PCI_NAMESPACE, location)

    def create_context(self, device: DeviceInfo) -> Any:
        # The runtime API binds work to the primary context of the current device
        return device.handle

    def create_stream(self, context: Any) -> Any:
        with context:
            return self._cp.cuda.Stream(non_blocking=True)

    def current(self) -> tuple[Any, Any]:
        return self._cp.cuda.Device(), self._cp.cuda.get_current_stream()

    def make_current(self, context: Any, stream: Any) -> None:
        if context is not None:
            context.use()
        if stream is not None:
            stream.use()

    def synchronize(self) -> None:
        try:
            self._cp.cuda.runtime.deviceSynchronize()
        except self._cp.cuda.runtime.CUDARuntimeError as e:
            raise CUDAError(f"Device synchronization failed: {e}") from e

    def record_event(self, stream: Any) -> Any:
        event = self._cp.cuda.Event(disable_timing=True)
        event.record(stream)
        return event

    def wait_event(self, stream: Any, event: Any) -> None:
        stream.wait_event(event)

    def allocator(self, intent: AllocationIntent) -> Allocator:
        cp = self._cp
        routines: dict[AllocationIntent, Allocator] = {
            AllocationIntent.UNDEF: cp.empty,
            AllocationIntent.ZEROS: cp.zeros,
            AllocationIntent.ONES: cp.ones,
            AllocationIntent.RAND: lambda shape, dtype=np.float32: cp.random.random(shape, dtype=dtype),
            AllocationIntent.RANDN: lambda shape, dtype=np.float32: cp.random.standard_normal(
                shape, dtype=dtype
            ),
        }
        return routines[intent]

    def is_native(self, value: object) -> bool:
        return isinstance(value, self._cp.ndarray)

    def to_device(self, host_value: Any) -> Any:
        if isinstance(host_value, self._cp.ndarray):
            return self._cp.asarray(host_value)
        host = np.asarray(host_value)
        if host.dtype == object:
            raise TypeError(f"Unsupported dtype object for {type(host_value).__name__}")
        return self._cp.asarray(host)

    def to_host(self, device_array: Any) -> NDArray[Any]:
        stream = self._cp.cuda.get_current_stream()
        host = device_array.get(stream=stream)
        stream.synchronize()
        return host

    def copy(self, dst: Any, src: Any) -> None:
        cp = self._cp
        if tuple(dst.shape) != tuple(src.shape):
            raise ValueError(f"Shape mismatch: cannot copy {src.shape} into {dst.shape}")

        stream = cp.cuda.get_current_stream()
        if isinstance(dst, np.ndarray):
            src.get(stream=stream, out=dst)
            stream.synchronize()
        elif isinstance(src, cp.ndarray) and src.device.id != dst.device.id:
            if not (src.flags.c_contiguous and dst.flags.c_contiguous):
                raise CUDAError("Peer copies require C-contiguous arrays")
            cp.cuda.runtime.memcpyPeerAsync(
                dst.data.ptr,
                dst.device.id,
                src.data.ptr,
                src.device.id,
                src.nbytes,
                stream.ptr,
            )
        elif isinstance(src, cp.ndarray):
            cp.copyto(dst, src)
        else:
            dst.set(np.asarray(src, dtype=dst.dtype), stream=stream)

    def empty_like(self, device_array: Any) -> Any:
        return self._cp.empty(device_array.shape, dtype=device_array.dtype)

    def device_of(self, device_array: Any) -> int:
        return int(device_array.device.id)

    def data_ptr(self, device_array: Any) -> int:
        return int(device_array.data.ptr)

    def _allocation_base(self, ptr: int) -> int:
        """Get the start of the device allocation containing ``ptr``."""
        if self._libcuda is None:
            self._libcuda = _load_libcuda()
        base = ctypes.c_uint64()
        size = ctypes.c_size_t()
        status = self._libcuda.cuMemGetAddressRange_v2(
            ctypes.byref(base), ctypes.byref(size), ptr
        )
        if status != 0:
            raise CUDAError(f"cuMemGetAddressRange failed ({status}) for pointer {ptr:#x}")
        return base.value

    def export_ipc(self, device_array: Any, device: DeviceInfo) -> IpcMemHandle:
        if not device_array.flags.c_contiguous:
            raise CUDAError("Only C-contiguous arrays can be exported")

        # Pooled arrays are sub-allocations: the handle names the whole block
        with device.handle:
            ptr = device_array.data.ptr
            base = self._allocation_base(ptr)
            payload = self._cp.cuda.runtime.ipcGetMemHandle(base)
        return IpcMemHandle(
            driver=self.name,
            device_uuid=device.uuid,
            payload=bytes(payload),
            shape=tuple(device_array.shape),
            dtype=str(device_array.dtype),
            offset=ptr - base,
        )

    def open_ipc(self, handle: IpcMemHandle, device: DeviceInfo) -> tuple[Any, Callable[[], None]]:
        cp = self._cp
        runtime = cp.cuda.runtime
        with device.handle:
            base = runtime.ipcOpenMemHandle(handle.payload, runtime.cudaIpcMemLazyEnablePeerAccess)
            memory = cp.cuda.UnownedMemory(
                base, handle.offset + handle.nbytes, None, device_id=device.ordinal
            )
            alias = cp.ndarray(
                handle.shape,
                dtype=np.dtype(handle.dtype),
                memptr=cp.cuda.MemoryPointer(memory, handle.offset),
            )

        def close() -> None:
            with device.handle:
                runtime.ipcCloseMemHandle(base)

        return alias, close

    def default_routines(self) -> list[tuple[Callable[..., Any], Callable[..., Any]]]:
        cp = self._cp
        return [
            (np.dot, cp.dot),
            (np.matmul, cp.matmul),
            (np.linalg.solve, cp.linalg.solve),
            (np.linalg.inv, cp.linalg.inv),
            (np.linalg.cholesky, cp.linalg.cholesky),
            (np.linalg.qr, cp.linalg.qr),
            (np.linalg.svd, cp.linalg.svd),
            (np.linalg.eigh, cp.linalg.eigh),
            (np.linalg.norm, cp.linalg.norm),
        ]

    def get_memory_info(self) -> dict[str, int]:
        """
        Get memory information for the current device.

        Returns:
            Dictionary with free and total memory in bytes.
        """
        if not self._cuda_available:
            return {"free": 0, "total": 0, "used": 0}

        free, total = self._cp.cuda.runtime.memGetInfo()
        return {"free": free, "total": total, "used": total - free}

    def __repr__(self) -> str:
        if self._cuda_available:
            return f"CUDADriver(devices={len(self.devices())})"
        return "CUDADriver(available=False)"
