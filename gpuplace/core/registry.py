"""
Device registry.

Discovers local accelerators and owns one context and one stream per
device for the lifetime of the worker.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from gpuplace.backends.base import DeviceInfo, Driver
from gpuplace.core.descriptors import DeviceMemorySpace, DeviceProcessor, proc_to_space
from gpuplace.exceptions import DeviceNotFoundError

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """
    Per-worker map from device ordinal to (device, context, stream).

    Having no devices is a valid state: the registry stays empty and no
    processors are advertised.

    Example:
        >>> with DeviceRegistry(EmulatedDriver(device_count=2), worker_id=1) as registry:
        ...     sorted(p.device for p in registry.processors())
        [0, 1]
    """

    def __init__(self, driver: Driver, worker_id: int) -> None:
        self._driver = driver
        self._worker_id = worker_id
        self._devices: dict[int, DeviceInfo] = {}
        self._contexts: dict[int, Any] = {}
        self._streams: dict[int, Any] = {}
        self._callbacks: dict[str, Callable[[], DeviceProcessor]] = {}
        self._lock = threading.RLock()
        self._initialized = False

    def __enter__(self) -> DeviceRegistry:
        self.init()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.shutdown()

    @property
    def driver(self) -> Driver:
        return self._driver

    @property
    def worker_id(self) -> int:
        return self._worker_id

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def has_devices(self) -> bool:
        with self._lock:
            return bool(self._devices)

    @property
    def devices(self) -> list[DeviceInfo]:
        with self._lock:
            return [self._devices[k] for k in sorted(self._devices)]

    def init(self) -> None:
        """Enumerate devices and create their contexts and streams."""
        with self._lock:
            if self._initialized:
                return

            if not self._driver.is_available:
                logger.debug(f"No {self._driver.name} devices on worker {self._worker_id}")
                self._initialized = True
                return

            for info in self._driver.devices():
                self._register(info)

            self._initialized = True
            logger.info(
                f"Registered {len(self._devices)} {self._driver.name} device(s) "
                f"on worker {self._worker_id}"
            )

    def _register(self, info: DeviceInfo) -> None:
        logger.debug(f"Registering {self._driver.name} processor: {info}")
        context = self._driver.create_context(info)
        self._devices[info.ordinal] = info
        self._contexts[info.ordinal] = context
        self._streams[info.ordinal] = self._driver.create_stream(context)

        worker_id = self._worker_id
        self.add_processor_callback(
            f"{self._driver.name}_device_{info.ordinal}",
            lambda: DeviceProcessor(worker_id, info.ordinal, info.uuid),
        )

    def shutdown(self) -> None:
        """Drain every device and forget all handles."""
        with self._lock:
            if not self._initialized:
                return

            saved = self._driver.current()
            try:
                for ordinal in sorted(self._contexts):
                    self._driver.make_current(self._contexts[ordinal], self._streams[ordinal])
                    self._driver.synchronize()
            finally:
                self._driver.make_current(*saved)

            self._devices.clear()
            self._contexts.clear()
            self._streams.clear()
            self._callbacks.clear()
            self._initialized = False

    def add_processor_callback(self, name: str, factory: Callable[[], DeviceProcessor]) -> None:
        """Register a factory producing the processor descriptor of one device."""
        with self._lock:
            self._callbacks[name] = factory

    def processors(self) -> set[DeviceProcessor]:
        """Get the processors advertised by this worker."""
        with self._lock:
            factories = list(self._callbacks.values())
        return {factory() for factory in factories}

    def memory_spaces(self) -> set[DeviceMemorySpace]:
        return {proc_to_space(proc) for proc in self.processors()}

    def _lookup(self, table: dict[int, Any], device: int) -> Any:
        with self._lock:
            try:
                return table[device]
            except KeyError:
                raise DeviceNotFoundError(device, sorted(self._devices)) from None

    def device_for(self, device: int) -> DeviceInfo:
        return self._lookup(self._devices, device)

    def context_for(self, device: int) -> Any:
        return self._lookup(self._contexts, device)

    def stream_for(self, device: int) -> Any:
        return self._lookup(self._streams, device)

    def __repr__(self) -> str:
        return (
            f"DeviceRegistry(worker={self._worker_id}, driver={self._driver.name}, "
            f"devices={sorted(self._devices)})"
        )
