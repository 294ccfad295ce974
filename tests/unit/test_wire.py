"""
Unit tests for the cross-worker wire codec.
"""

from __future__ import annotations

from collections import OrderedDict
from uuid import uuid4

import numpy as np
import pytest

from gpuplace.backends.base import AllocationIntent, IpcMemHandle
from gpuplace.cluster import wire
from gpuplace.core.chunk import Chunk, ChunkKind
from gpuplace.core.descriptors import DeviceMemorySpace, DeviceProcessor, HostProcessor
from gpuplace.exceptions import WireDecodeError, WireEncodeError


class TestWire:
    """Tests for encode and decode."""

    def test_array(self) -> None:
        """Test that decoded arrays are equal, writeable copies."""
        arr = np.arange(6, dtype=np.int16).reshape(2, 3)

        decoded = wire.decode(wire.encode(arr))

        np.testing.assert_array_equal(decoded, arr)
        assert decoded.dtype == np.int16
        assert decoded.flags.writeable
        decoded[0, 0] = 99
        assert arr[0, 0] == 0

    def test_descriptors_and_chunk(self) -> None:
        uid = uuid4()
        space = DeviceMemorySpace(2, 1, uid)
        chunk = Chunk(2, uuid4(), ChunkKind.DEVICE, space)

        decoded = wire.decode(
            wire.encode([HostProcessor(1), DeviceProcessor(2, 1, uid), chunk])
        )

        assert decoded == [HostProcessor(1), DeviceProcessor(2, 1, uid), chunk]

    def test_ipc_handle(self) -> None:
        handle = IpcMemHandle("emulated", uuid4(), b"\x00\x01", (4, 2), "float64")

        decoded = wire.decode(wire.encode(handle))

        assert decoded == handle
        assert decoded.nbytes == 64

    def test_ipc_handle_offset(self) -> None:
        """Test that a handle into the middle of an allocation keeps its offset."""
        handle = IpcMemHandle("cuda", uuid4(), b"\x07" * 64, (8,), "float32", offset=8192)

        decoded = wire.decode(wire.encode(handle))

        assert decoded.offset == 8192
        assert decoded == handle

    def test_tuples_stay_tuples(self) -> None:
        value = ("x", np.arange(2), {"pair": (1, (2.0, "y"))}, [(), (None,)])

        decoded = wire.decode(wire.encode(value))

        assert isinstance(decoded, tuple)
        assert decoded[0] == "x"
        np.testing.assert_array_equal(decoded[1], np.arange(2))
        assert decoded[2] == {"pair": (1, (2.0, "y"))}
        assert isinstance(decoded[2]["pair"][1], tuple)
        assert decoded[3] == [(), (None,)]

    def test_enum_members(self) -> None:
        decoded = wire.decode(wire.encode([ChunkKind.HOST, AllocationIntent.ZEROS]))

        assert decoded == [ChunkKind.HOST, AllocationIntent.ZEROS]
        assert decoded[0] is ChunkKind.HOST

    def test_builtin_subclasses_travel_as_base(self) -> None:
        decoded = wire.decode(wire.encode(OrderedDict(a=1, b=[True, 2])))

        assert type(decoded) is dict
        assert decoded == {"a": 1, "b": [True, 2]}
        assert decoded["b"][0] is True

    def test_numpy_scalar(self) -> None:
        decoded = wire.decode(wire.encode(np.float32(1.5)))
        assert decoded == np.float32(1.5)
        assert decoded.dtype == np.float32

    def test_module_level_callables(self) -> None:
        """Test that importable functions and classes travel by name."""
        assert wire.decode(wire.encode([np.sum, int, HostProcessor])) == [np.sum, int, HostProcessor]

    def test_lambda_rejected(self) -> None:
        with pytest.raises(WireEncodeError):
            wire.encode(lambda x: x)

    def test_unknown_type_rejected(self) -> None:
        class Opaque:
            pass

        with pytest.raises(WireEncodeError) as exc_info:
            wire.encode(Opaque())

        assert exc_info.value.value_type is Opaque

    def test_malformed_payload(self) -> None:
        with pytest.raises(WireDecodeError):
            wire.decode(b"\xc1")
