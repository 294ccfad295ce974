"""
Chunks: references to values held by a worker.

A chunk is what the scheduler passes around instead of the value itself.
Dereferencing it on the owning worker is a dictionary lookup; from any
other worker it is a remote call.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any
from uuid import UUID, uuid4

from gpuplace.core.buffer import DeviceBuffer, memory_space
from gpuplace.core.descriptors import DeviceMemorySpace, HostMemorySpace
from gpuplace.exceptions import ChunkNotFoundError


class ChunkKind(Enum):
    """What a chunk refers to."""

    DEVICE = auto()
    HOST = auto()
    FUNCTION = auto()
    TYPE = auto()


def chunk_kind(value: object) -> ChunkKind:
    if isinstance(value, DeviceBuffer):
        return ChunkKind.DEVICE
    if isinstance(value, type):
        return ChunkKind.TYPE
    if callable(value):
        return ChunkKind.FUNCTION
    return ChunkKind.HOST


@dataclass(frozen=True)
class Chunk:
    """Reference to a value stored on worker ``owner``."""

    owner: int
    ref: UUID
    kind: ChunkKind
    space: DeviceMemorySpace | HostMemorySpace

    def __repr__(self) -> str:
        return f"Chunk(worker={self.owner}, ref={self.ref.hex[:8]}, kind={self.kind.name})"


class ChunkStore:
    """
    Thread-safe per-worker store of chunk values.

    Values are stored by reference; no copying occurs on ``put`` or ``get``.

    Example:
        >>> store = ChunkStore(worker_id=1)
        >>> chunk = store.put(np.arange(3))
        >>> store.get(chunk.ref) is store.get(chunk.ref)
        True
    """

    def __init__(self, worker_id: int) -> None:
        self._worker_id = worker_id
        self._values: dict[UUID, Any] = {}
        self._chunks: dict[UUID, Chunk] = {}
        self._lock = threading.RLock()
        self._stats = {
            "stored": 0,
            "retrieved": 0,
            "released": 0,
        }

    @property
    def worker_id(self) -> int:
        return self._worker_id

    def put(self, value: Any) -> Chunk:
        """Store ``value`` and return a chunk referring to it."""
        chunk = Chunk(
            owner=self._worker_id,
            ref=uuid4(),
            kind=chunk_kind(value),
            space=memory_space(value, self._worker_id),
        )
        with self._lock:
            self._values[chunk.ref] = value
            self._chunks[chunk.ref] = chunk
            self._stats["stored"] += 1
        return chunk

    def get(self, ref: UUID) -> Any:
        """
        Get the value behind ``ref``.

        Raises:
            ChunkNotFoundError: If the value is not stored here.
        """
        with self._lock:
            try:
                value = self._values[ref]
            except KeyError:
                raise ChunkNotFoundError(ref, self._worker_id) from None
            self._stats["retrieved"] += 1
            return value

    def unwrap(self, chunk: Chunk) -> Any:
        return self.get(chunk.ref)

    def release(self, ref: UUID) -> bool:
        """
        Drop a stored value.

        Returns:
            True if the value was stored, False otherwise.
        """
        with self._lock:
            if ref not in self._values:
                return False
            del self._values[ref]
            del self._chunks[ref]
            self._stats["released"] += 1
            return True

    def clear(self) -> int:
        """
        Drop every stored value.

        Returns:
            Number of values dropped.
        """
        with self._lock:
            count = len(self._values)
            self._values.clear()
            self._chunks.clear()
            return count

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                **self._stats,
                "active_chunks": len(self._values),
            }

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, ref: UUID) -> bool:
        return ref in self._values
