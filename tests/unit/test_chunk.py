"""
Unit tests for chunks and the chunk store.
"""

from __future__ import annotations

from uuid import uuid4

import numpy as np
import pytest

from gpuplace.core.chunk import Chunk, ChunkKind, ChunkStore, chunk_kind
from gpuplace.core.descriptors import HostMemorySpace
from gpuplace.exceptions import ChunkNotFoundError


class TestChunkKind:
    """Tests for chunk classification."""

    def test_kinds(self) -> None:
        assert chunk_kind(np.zeros(3)) is ChunkKind.HOST
        assert chunk_kind([1, 2]) is ChunkKind.HOST
        assert chunk_kind(np.matmul) is ChunkKind.FUNCTION
        assert chunk_kind(lambda x: x) is ChunkKind.FUNCTION
        assert chunk_kind(np.ndarray) is ChunkKind.TYPE


class TestChunkStore:
    """Tests for ChunkStore class."""

    def test_put_get(self) -> None:
        """Test that values are stored by reference."""
        store = ChunkStore(worker_id=4)
        value = np.arange(3)

        chunk = store.put(value)

        assert chunk.owner == 4
        assert chunk.kind is ChunkKind.HOST
        assert chunk.space == HostMemorySpace(4)
        assert store.get(chunk.ref) is value
        assert store.unwrap(chunk) is value
        assert chunk.ref in store
        assert len(store) == 1

    def test_missing_chunk_raises(self) -> None:
        store = ChunkStore(worker_id=1)

        with pytest.raises(ChunkNotFoundError) as exc_info:
            store.get(uuid4())

        assert exc_info.value.worker_id == 1

    def test_release(self) -> None:
        store = ChunkStore(worker_id=1)
        chunk = store.put("value")

        assert store.release(chunk.ref)
        assert not store.release(chunk.ref)
        assert chunk.ref not in store

    def test_clear_and_stats(self) -> None:
        store = ChunkStore(worker_id=1)
        chunk = store.put(1)
        store.put(2)
        store.get(chunk.ref)

        stats = store.get_stats()
        assert stats["stored"] == 2
        assert stats["retrieved"] == 1
        assert stats["active_chunks"] == 2

        assert store.clear() == 2
        assert len(store) == 0

    def test_chunks_are_values(self) -> None:
        ref = uuid4()
        a = Chunk(1, ref, ChunkKind.HOST, HostMemorySpace(1))
        b = Chunk(1, ref, ChunkKind.HOST, HostMemorySpace(1))
        assert a == b
