"""Runtime metadata: pallets, calls, storage entries, constants and events."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from subclient.codec import Call, Encoded

META_RESERVED = 0x6174656D
METADATA_VERSION = 14


class MetadataError(Exception):
    """Something requested is not described by the metadata."""

    class Kind(enum.Enum):
        PALLET_NOT_FOUND = "Pallet {} not found"
        PALLET_INDEX_NOT_FOUND = "Pallet index {} not found"
        CALL_NOT_FOUND = "Call {} not found"
        EVENT_NOT_FOUND = "Pallet {}, Event {} not found"
        ERROR_NOT_FOUND = "Pallet {}, Error {} not found"
        STORAGE_NOT_FOUND = "Storage {} not found"
        STORAGE_TYPE_ERROR = "Storage type error"
        DEFAULT_ERROR = "Failed to decode default: {}"
        CONSTANT_VALUE_ERROR = "Failed to decode constant value: {}"
        CONSTANT_NOT_FOUND = "Constant {} not found"
        TYPE_NOT_FOUND = "Type {} missing from type registry"

    def __init__(self, kind: MetadataError.Kind, *details: Any) -> None:
        self.kind = kind
        self.details = details
        super().__init__(kind.value.format(*details))


class InvalidMetadataError(Exception):
    """The metadata itself is malformed or of an unsupported version."""

    class Kind(enum.Enum):
        INVALID_PREFIX = "Invalid prefix"
        INVALID_VERSION = "Invalid version"
        MISSING_TYPE = "Type {} missing from type registry"
        TYPE_DEF_NOT_VARIANT = "Type {} was not a variant/enum type"

    def __init__(self, kind: InvalidMetadataError.Kind, *details: Any) -> None:
        self.kind = kind
        self.details = details
        super().__init__(kind.value.format(*details))


@dataclass(frozen=True)
class Variant:
    """One variant of an enum type."""

    name: str
    index: int
    fields: tuple[Any, ...] = ()
    docs: tuple[str, ...] = ()


@dataclass(frozen=True)
class PortableType:
    """A type in the registry; ``type_def`` names its kind, e.g. "variant"."""

    type_def: str
    path: tuple[str, ...] = ()
    variants: tuple[Variant, ...] = ()

    @property
    def is_variant(self) -> bool:
        return self.type_def == "variant"


@dataclass
class TypeRegistry:
    """Types of the runtime, looked up by id."""

    types: dict[int, PortableType] = field(default_factory=dict)

    def resolve(self, type_id: int) -> PortableType | None:
        return self.types.get(type_id)


@dataclass(frozen=True)
class StorageEntryMetadata:
    name: str
    ty: int
    default: bytes = b""
    modifier: str = "Default"
    docs: tuple[str, ...] = ()


@dataclass(frozen=True)
class PalletConstantMetadata:
    name: str
    ty: int
    value: bytes = b""
    docs: tuple[str, ...] = ()


@dataclass(frozen=True)
class PalletInfo:
    """A pallet as described by the metadata; type ids point into the registry."""

    name: str
    index: int
    calls: int | None = None
    event: int | None = None
    error: int | None = None
    storage: tuple[StorageEntryMetadata, ...] | None = None
    constants: tuple[PalletConstantMetadata, ...] = ()


@dataclass
class RuntimeMetadataV14:
    types: TypeRegistry
    pallets: tuple[PalletInfo, ...] = ()


@dataclass
class RuntimeMetadataPrefixed:
    """Metadata together with its magic prefix and version number."""

    metadata: Any
    prefix: int = META_RESERVED
    version: int = METADATA_VERSION


@dataclass(frozen=True)
class EventMetadata:
    pallet: str
    event: str
    variant: Variant


@dataclass
class PalletMetadata:
    """Lookup tables for one pallet."""

    index: int
    name: str
    calls: dict[str, int] = field(default_factory=dict)
    storage_entries: dict[str, StorageEntryMetadata] = field(default_factory=dict)
    constants: dict[str, PalletConstantMetadata] = field(default_factory=dict)

    def encode_call(self, call: Call) -> Encoded:
        """Encode ``call`` prefixed with the pallet and call indices."""
        try:
            fn_index = self.calls[call.FUNCTION]
        except KeyError:
            raise MetadataError(MetadataError.Kind.CALL_NOT_FOUND, call.FUNCTION) from None
        return Encoded(bytes([self.index, fn_index]) + call.encode())

    def storage(self, key: str) -> StorageEntryMetadata:
        try:
            return self.storage_entries[key]
        except KeyError:
            raise MetadataError(MetadataError.Kind.STORAGE_NOT_FOUND, key) from None

    def constant(self, key: str) -> PalletConstantMetadata:
        try:
            return self.constants[key]
        except KeyError:
            raise MetadataError(MetadataError.Kind.CONSTANT_NOT_FOUND, key) from None


class Metadata:
    """Runtime metadata indexed for lookups by name and index."""

    def __init__(
        self,
        metadata: RuntimeMetadataV14,
        pallets: dict[str, PalletMetadata],
        events: dict[tuple[int, int], EventMetadata],
    ) -> None:
        self._metadata = metadata
        self._pallets = pallets
        self._events = events

    @classmethod
    def from_runtime_metadata(cls, prefixed: RuntimeMetadataPrefixed) -> Metadata:
        if prefixed.prefix != META_RESERVED:
            raise InvalidMetadataError(InvalidMetadataError.Kind.INVALID_PREFIX)
        runtime = prefixed.metadata
        if prefixed.version != METADATA_VERSION or not isinstance(runtime, RuntimeMetadataV14):
            raise InvalidMetadataError(InvalidMetadataError.Kind.INVALID_VERSION)

        def variants_of(type_id: int) -> tuple[Variant, ...]:
            ty = runtime.types.resolve(type_id)
            if ty is None:
                raise InvalidMetadataError(InvalidMetadataError.Kind.MISSING_TYPE, type_id)
            if not ty.is_variant:
                raise InvalidMetadataError(InvalidMetadataError.Kind.TYPE_DEF_NOT_VARIANT, type_id)
            return ty.variants

        pallets: dict[str, PalletMetadata] = {}
        for info in runtime.pallets:
            calls = {} if info.calls is None else {v.name: v.index for v in variants_of(info.calls)}
            pallets[info.name] = PalletMetadata(
                index=info.index,
                name=info.name,
                calls=calls,
                storage_entries={entry.name: entry for entry in info.storage or ()},
                constants={constant.name: constant for constant in info.constants},
            )

        pallet_events = [
            (info, variants_of(info.event)) for info in runtime.pallets if info.event is not None
        ]
        events = {
            (info.index, variant.index): EventMetadata(info.name, variant.name, variant)
            for info, variants in pallet_events
            for variant in variants
        }
        return cls(runtime, pallets, events)

    def pallet(self, name: str) -> PalletMetadata:
        try:
            return self._pallets[name]
        except KeyError:
            raise MetadataError(MetadataError.Kind.PALLET_NOT_FOUND, name) from None

    def event(self, pallet_index: int, event_index: int) -> EventMetadata:
        try:
            return self._events[(pallet_index, event_index)]
        except KeyError:
            raise MetadataError(
                MetadataError.Kind.EVENT_NOT_FOUND, pallet_index, event_index
            ) from None

    def resolve_type(self, type_id: int) -> PortableType | None:
        return self._metadata.types.resolve(type_id)

    def runtime_metadata(self) -> RuntimeMetadataV14:
        return self._metadata