"""
Wire codec for values crossing a worker boundary.

Uses msgpack with hooks for the handful of non-native types that travel
between workers: UUIDs, host arrays, descriptors, chunks and IPC handles.
Tuples and enum members keep their type; subclasses of the builtin
containers and scalars travel as their base type.
Module-level functions and classes travel by qualified name and are
imported again on the receiving side.
Device buffers never cross; they are moved by the data mover instead.
"""

from __future__ import annotations

import importlib
from enum import Enum
from typing import Any
from uuid import UUID

import msgpack
import numpy as np

from gpuplace.backends.base import IpcMemHandle
from gpuplace.core.chunk import Chunk, ChunkKind
from gpuplace.core.descriptors import (
    DeviceMemorySpace,
    DeviceProcessor,
    HostMemorySpace,
    HostProcessor,
)
from gpuplace.exceptions import WireDecodeError, WireEncodeError

_HOST_DESCRIPTORS: dict[str, type[HostProcessor] | type[HostMemorySpace]] = {
    "HostProcessor": HostProcessor,
    "HostMemorySpace": HostMemorySpace,
}
_DEVICE_DESCRIPTORS: dict[str, type[DeviceProcessor] | type[DeviceMemorySpace]] = {
    "DeviceProcessor": DeviceProcessor,
    "DeviceMemorySpace": DeviceMemorySpace,
}

# Checked in order, so bool precedes int
_BUILTIN_BASES: tuple[type, ...] = (dict, list, bool, int, float, str, bytes)


def _encoder(obj: Any) -> Any:
    """Encode UUID, numpy and gpuplace objects for msgpack."""
    if isinstance(obj, UUID):
        return {"__uuid_bin__": obj.bytes}
    if isinstance(obj, np.ndarray):
        return {
            "__ndarray__": np.ascontiguousarray(obj).tobytes(),
            "dtype": str(obj.dtype),
            "shape": list(obj.shape),
        }
    if isinstance(obj, np.generic):
        return {"__npscalar__": obj.tobytes(), "dtype": str(obj.dtype)}
    if isinstance(obj, Enum) and _is_importable(type(obj)):
        cls = type(obj)
        return {"__enum__": cls.__module__, "qualname": cls.__qualname__, "name": obj.name}
    if isinstance(obj, tuple):
        return {"__tuple__": list(obj)}
    if isinstance(obj, (HostProcessor, HostMemorySpace)):
        return {"__desc__": type(obj).__name__, "owner": obj.owner}
    if isinstance(obj, (DeviceProcessor, DeviceMemorySpace)):
        return {
            "__desc__": type(obj).__name__,
            "owner": obj.owner,
            "device": obj.device,
            "device_uuid": obj.device_uuid,
        }
    if isinstance(obj, Chunk):
        return {
            "__chunk__": obj.ref,
            "owner": obj.owner,
            "kind": obj.kind.name,
            "space": obj.space,
        }
    if isinstance(obj, IpcMemHandle):
        return {
            "__ipc__": obj.payload,
            "driver": obj.driver,
            "device_uuid": obj.device_uuid,
            "shape": list(obj.shape),
            "dtype": obj.dtype,
            "offset": obj.offset,
        }
    if callable(obj) and _is_importable(obj):
        return {"__callable__": obj.__module__, "qualname": obj.__qualname__}
    for base in _BUILTIN_BASES:
        if isinstance(obj, base):
            return base(obj)
    raise TypeError(f"Unknown type: {type(obj)}")


def _decoder(obj: dict[str, Any]) -> Any:
    """Decode UUID, numpy and gpuplace objects from msgpack."""
    if "__uuid_bin__" in obj:
        return UUID(bytes=obj["__uuid_bin__"])
    if "__ndarray__" in obj:
        return np.frombuffer(
            obj["__ndarray__"],
            dtype=obj["dtype"],
        ).reshape(obj["shape"]).copy()  # copy to make writeable
    if "__npscalar__" in obj:
        return np.frombuffer(obj["__npscalar__"], dtype=obj["dtype"])[0]
    if "__tuple__" in obj:
        return tuple(obj["__tuple__"])
    if "__enum__" in obj:
        return _import(obj["__enum__"], obj["qualname"])[obj["name"]]
    if "__desc__" in obj:
        name = obj["__desc__"]
        if name in _HOST_DESCRIPTORS:
            return _HOST_DESCRIPTORS[name](obj["owner"])
        return _DEVICE_DESCRIPTORS[name](obj["owner"], obj["device"], obj["device_uuid"])
    if "__chunk__" in obj:
        return Chunk(
            owner=obj["owner"],
            ref=obj["__chunk__"],
            kind=ChunkKind[obj["kind"]],
            space=obj["space"],
        )
    if "__ipc__" in obj:
        return IpcMemHandle(
            driver=obj["driver"],
            device_uuid=obj["device_uuid"],
            payload=obj["__ipc__"],
            shape=tuple(obj["shape"]),
            dtype=obj["dtype"],
            offset=obj.get("offset", 0),
        )
    if "__callable__" in obj:
        return _import(obj["__callable__"], obj["qualname"])
    return obj


def _is_importable(obj: Any) -> bool:
    module = getattr(obj, "__module__", None)
    qualname = getattr(obj, "__qualname__", None)
    if not module or not qualname or "<" in qualname:
        return False
    try:
        return _import(module, qualname) is obj
    except (ImportError, AttributeError):
        return False


def _import(module: str, qualname: str) -> Any:
    target: Any = importlib.import_module(module)
    for part in qualname.split("."):
        target = getattr(target, part)
    return target


def encode(value: Any) -> bytes:
    """
    Encode a value for another worker.

    Raises:
        WireEncodeError: If the value holds a type that cannot cross.
    """
    try:
        return msgpack.packb(value, default=_encoder, use_bin_type=True, strict_types=True)
    except Exception as e:
        raise WireEncodeError(value, e) from e


def decode(data: bytes) -> Any:
    """
    Decode a payload produced by ``encode``.

    Raises:
        WireDecodeError: If the payload is malformed.
    """
    try:
        return msgpack.unpackb(data, object_hook=_decoder, raw=False)
    except Exception as e:
        raise WireDecodeError(e) from e
