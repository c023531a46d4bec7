"""Pluggable value serializers.

Every serializer maps ``None`` to ``None`` on encode and empty/``None``
payloads to ``None`` on decode. Failures surface as ``SerializationError``.
"""

import json
import pickle
import zlib
from abc import ABC, abstractmethod
from typing import Any, Optional

from .exceptions import SerializationError

_RAW = b"\x00"
_ZLIB = b"\x01"


class CacheSerializer(ABC):
    """Encodes cache values to bytes and back."""

    name: str = "base"

    @abstractmethod
    def encode(self, value: Any) -> Optional[bytes]:
        ...

    @abstractmethod
    def decode(self, data: Optional[bytes]) -> Any:
        ...


class PickleSerializer(CacheSerializer):
    """Arbitrary Python objects, primitives included."""

    name = "pickle"

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        self.protocol = protocol

    def encode(self, value: Any) -> Optional[bytes]:
        if value is None:
            return None
        try:
            return pickle.dumps(value, protocol=self.protocol)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise SerializationError(f"Cannot pickle {type(value).__name__}: {e}") from e

    def decode(self, data: Optional[bytes]) -> Any:
        if not data:
            return None
        try:
            return pickle.loads(data)
        except Exception as e:
            raise SerializationError(f"Cannot unpickle payload: {e}") from e


class JsonSerializer(CacheSerializer):
    """JSON documents (dicts, lists, strings, numbers, booleans)."""

    name = "json"

    def encode(self, value: Any) -> Optional[bytes]:
        if value is None:
            return None
        try:
            return json.dumps(value, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot encode {type(value).__name__} as JSON: {e}") from e

    def decode(self, data: Optional[bytes]) -> Any:
        if not data:
            return None
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise SerializationError(f"Cannot decode JSON payload: {e}") from e


class CompressedSerializer(CacheSerializer):
    """zlib wrapper around another serializer.

    Payloads carry a one-byte marker so compressed and raw rows can coexist
    (e.g. after toggling ``enable_compression``).
    """

    def __init__(self, inner: CacheSerializer, level: int = 6, min_size: int = 256):
        self.inner = inner
        self.level = level
        self.min_size = min_size
        self.name = f"{inner.name}+zlib"

    def encode(self, value: Any) -> Optional[bytes]:
        data = self.inner.encode(value)
        if data is None:
            return None
        if len(data) < self.min_size:
            return _RAW + data
        return _ZLIB + zlib.compress(data, self.level)

    def decode(self, data: Optional[bytes]) -> Any:
        if not data:
            return None
        marker, body = data[:1], data[1:]
        if marker == _ZLIB:
            try:
                body = zlib.decompress(body)
            except zlib.error as e:
                raise SerializationError(f"Corrupt compressed payload: {e}") from e
        elif marker != _RAW:
            raise SerializationError(f"Unknown payload marker {marker!r}")
        return self.inner.decode(body)


SERIALIZERS = {
    "pickle": PickleSerializer,
    "json": JsonSerializer,
}


def create_serializer(name: str = "pickle", compress: bool = False) -> CacheSerializer:
    """Build a serializer by name, optionally wrapped with compression."""
    try:
        serializer = SERIALIZERS[name]()
    except KeyError:
        raise SerializationError(f"Unknown serializer '{name}'") from None
    if compress:
        return CompressedSerializer(serializer)
    return serializer
