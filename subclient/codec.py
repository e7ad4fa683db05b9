"""SCALE encoding primitives and base types for calls, events and opaque values."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Any, Callable, ClassVar

FieldEncoder = Callable[[Any], bytes]
FieldDecoder = Callable[[bytes], "tuple[Any, int]"]

_MAX_BIG_INT_BYTES = 67


class CodecError(ValueError):
    """Raised when a value cannot be encoded or bytes cannot be decoded."""


def encode_compact(value: int) -> bytes:
    """Encode a non-negative integer in SCALE compact form."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise CodecError(f"compact values must be integers, got {value!r}")
    if value < 0:
        raise CodecError(f"compact values must be non-negative, got {value}")
    if value < 1 << 6:
        return bytes([value << 2])
    if value < 1 << 14:
        return ((value << 2) | 0b01).to_bytes(2, "little")
    if value < 1 << 30:
        return ((value << 2) | 0b10).to_bytes(4, "little")
    length = max(4, (value.bit_length() + 7) // 8)
    if length > _MAX_BIG_INT_BYTES:
        raise CodecError(f"value too large for compact encoding: {length} bytes")
    return bytes([((length - 4) << 2) | 0b11]) + value.to_bytes(length, "little")


def decode_compact(data: bytes) -> tuple[int, int]:
    """Decode a compact integer; returns the value and the number of bytes used."""
    data = bytes(data)
    if not data:
        raise CodecError("cannot decode compact integer from empty input")
    mode = data[0] & 0b11
    if mode == 0b00:
        return data[0] >> 2, 1
    if mode in (0b01, 0b10):
        size = 2 if mode == 0b01 else 4
        if len(data) < size:
            raise CodecError("not enough bytes for compact integer")
        return int.from_bytes(data[:size], "little") >> 2, size
    length = (data[0] >> 2) + 4
    if len(data) < 1 + length:
        raise CodecError("not enough bytes for compact integer")
    return int.from_bytes(data[1 : 1 + length], "little"), 1 + length


def encode_bytes(data: bytes) -> bytes:
    """Encode a byte string with its compact length prefix."""
    payload = bytes(data)
    return encode_compact(len(payload)) + payload


def decode_bytes(data: bytes) -> tuple[bytes, int]:
    """Decode a length-prefixed byte string; returns the bytes and the number used."""
    data = bytes(data)
    length, offset = decode_compact(data)
    end = offset + length
    if len(data) < end:
        raise CodecError(f"expected {length} bytes of payload, found {len(data) - offset}")
    return data[offset:end], end


@dataclass(frozen=True)
class Encoded:
    """Bytes that are already encoded and are written out unchanged."""

    data: bytes

    def encode(self) -> bytes:
        return bytes(self.data)


@dataclass(frozen=True)
class Phase:
    """A phase of a block's execution."""

    class Kind(enum.IntEnum):
        APPLY_EXTRINSIC = 0
        FINALIZATION = 1
        INITIALIZATION = 2

    kind: Kind
    extrinsic_index: int | None = None

    def __post_init__(self) -> None:
        if self.kind is Phase.Kind.APPLY_EXTRINSIC:
            index = self.extrinsic_index
            if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < 1 << 32:
                raise CodecError(f"extrinsic index must be a u32, got {index!r}")
        elif self.extrinsic_index is not None:
            raise CodecError(f"{self.kind.name} carries no extrinsic index")

    @classmethod
    def apply_extrinsic(cls, index: int) -> Phase:
        return cls(cls.Kind.APPLY_EXTRINSIC, index)

    @classmethod
    def finalization(cls) -> Phase:
        return cls(cls.Kind.FINALIZATION)

    @classmethod
    def initialization(cls) -> Phase:
        return cls(cls.Kind.INITIALIZATION)

    def encode(self) -> bytes:
        if self.kind is Phase.Kind.APPLY_EXTRINSIC:
            return bytes([self.kind]) + struct.pack("<I", self.extrinsic_index)
        return bytes([self.kind])

    @classmethod
    def decode(cls, data: bytes) -> tuple[Phase, int]:
        """Decode a phase; returns it and the number of bytes used."""
        data = bytes(data)
        if not data:
            raise CodecError("cannot decode phase from empty input")
        try:
            kind = cls.Kind(data[0])
        except ValueError:
            raise CodecError(f"unknown phase variant {data[0]}") from None
        if kind is cls.Kind.APPLY_EXTRINSIC:
            if len(data) < 5:
                raise CodecError("not enough bytes for extrinsic index")
            (index,) = struct.unpack_from("<I", data, 1)
            return cls(kind, index), 5
        return cls(kind), 1


@dataclass(frozen=True)
class WrapperKeepOpaque:
    """A value kept only in its encoded form, encoded like a byte vector."""

    data: bytes = b""

    @classmethod
    def from_encoded(cls, data: bytes) -> WrapperKeepOpaque:
        return cls(bytes(data))

    def try_decode(self, decoder: FieldDecoder) -> Any:
        """Decode the inner value with ``decoder``; None unless it uses every byte."""
        try:
            value, used = decoder(self.data)
        except (ValueError, IndexError, struct.error):
            return None
        if used != len(self.data):
            return None
        return value

    def encoded_len(self) -> int:
        return len(self.data)

    def encoded(self) -> bytes:
        return self.data

    def encode(self) -> bytes:
        return encode_bytes(self.data)

    @classmethod
    def decode(cls, data: bytes) -> tuple[WrapperKeepOpaque, int]:
        payload, used = decode_bytes(data)
        return cls(payload), used


class Call:
    """Base for runtime calls; subclasses set PALLET, FUNCTION and FIELDS."""

    PALLET: ClassVar[str] = ""
    FUNCTION: ClassVar[str] = ""
    FIELDS: ClassVar[tuple[tuple[str, FieldEncoder], ...]] = ()

    @classmethod
    def is_call(cls, pallet: str, function: str) -> bool:
        return cls.PALLET == pallet and cls.FUNCTION == function

    def encode(self) -> bytes:
        return b"".join(encoder(getattr(self, name)) for name, encoder in self.FIELDS)


class Event:
    """Base for runtime events; subclasses set PALLET, EVENT and FIELDS."""

    PALLET: ClassVar[str] = ""
    EVENT: ClassVar[str] = ""
    FIELDS: ClassVar[tuple[tuple[str, FieldDecoder], ...]] = ()

    @classmethod
    def is_event(cls, pallet: str, event: str) -> bool:
        return cls.PALLET == pallet and cls.EVENT == event

    @classmethod
    def decode(cls, data: bytes) -> Event:
        """Decode the event's fields, in FIELDS order, from ``data``."""
        remaining = bytes(data)
        values: dict[str, Any] = {}
        for name, decoder in cls.FIELDS:
            value, used = decoder(remaining)
            values[name] = value
            remaining = remaining[used:]
        return cls(**values)