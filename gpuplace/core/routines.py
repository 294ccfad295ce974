"""
Numeric routine substitution.

Maps a host numeric routine to the vendor routine to use instead when the
call is moved onto an accelerator. The table is filled explicitly: each
driver ships a statically written list of pairs and callers may register
more.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

Routine = Callable[..., Any]


class RoutineTable:
    """
    Registration table of host-to-device routine substitutions.

    Example:
        >>> table = RoutineTable()
        >>> table.register(numpy.matmul, cupy.matmul)
        >>> table.lookup(numpy.matmul) is cupy.matmul
        True
    """

    def __init__(self, pairs: Iterable[tuple[Routine, Routine]] = ()) -> None:
        self._table: dict[Routine, Routine] = {}
        self._lock = threading.Lock()
        for host_fn, device_fn in pairs:
            self.register(host_fn, device_fn)

    def register(self, host_fn: Routine, device_fn: Routine) -> None:
        """Substitute ``device_fn`` whenever ``host_fn`` is moved to a device."""
        if not callable(host_fn) or not callable(device_fn):
            raise TypeError("Both routines must be callable")
        with self._lock:
            self._table[host_fn] = device_fn
        logger.debug(f"Routine substitution registered: {_name(host_fn)} -> {_name(device_fn)}")

    def unregister(self, host_fn: Routine) -> bool:
        with self._lock:
            return self._table.pop(host_fn, None) is not None

    def lookup(self, host_fn: Routine) -> Routine | None:
        """Get the substitute for ``host_fn``, or None."""
        try:
            with self._lock:
                return self._table.get(host_fn)
        except TypeError:
            # Unhashable callables never have substitutes
            return None

    def __contains__(self, host_fn: object) -> bool:
        return self.lookup(host_fn) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._table)


def _name(fn: Routine) -> str:
    module = getattr(fn, "__module__", None) or ""
    qualname = getattr(fn, "__qualname__", None) or repr(fn)
    return f"{module}.{qualname}" if module else qualname
