"""Building storage keys and querying runtime storage through RPC."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Iterable

from subclient.codec import FieldDecoder
from subclient.hashing import StorageHasher, hash_with, twox_128
from subclient.metadata import Metadata, MetadataError
from subclient.rpc import BasicError, Rpc, StorageChangeSet

_DECODE_ERRORS = (ValueError, IndexError, struct.error)


def _raw_value(data: bytes) -> tuple[bytes, int]:
    data = bytes(data)
    return data, len(data)


def _decode(decoder: Callable[[bytes], Any], data: bytes) -> Any:
    try:
        return decoder(data)
    except _DECODE_ERRORS as exc:
        raise BasicError(f"cannot decode storage value: {exc}") from exc


@dataclass(frozen=True)
class StorageMapKey:
    """One encoded key of a storage map together with the hasher applied to it."""

    value: bytes
    hasher: StorageHasher

    @classmethod
    def from_encoded(cls, value: Any, hasher: StorageHasher) -> StorageMapKey:
        """Build a map key from bytes, or from anything with an ``encode`` method."""
        if isinstance(value, (bytes, bytearray, memoryview)):
            encoded = bytes(value)
        else:
            encoded = bytes(value.encode())
        return cls(encoded, StorageHasher(hasher))

    def hashed(self) -> bytes:
        return hash_with(self.hasher, self.value)


@dataclass(frozen=True)
class StorageKeyPrefix:
    """The hashed pallet and storage names that start every key of an entry."""

    data: bytes

    @classmethod
    def for_entry(cls, entry: Any) -> StorageKeyPrefix:
        """The prefix of a storage entry class or instance."""
        return cls(twox_128(entry.PALLET.encode()) + twox_128(entry.STORAGE.encode()))

    def to_storage_key(self) -> bytes:
        return bytes(self.data)


@dataclass(frozen=True)
class StorageEntryKey:
    """The key of a storage entry: plain, or made of one or more map keys."""

    map_keys: tuple[StorageMapKey, ...] | None = None

    @classmethod
    def plain(cls) -> StorageEntryKey:
        return cls()

    @classmethod
    def map(cls, map_keys: Iterable[StorageMapKey]) -> StorageEntryKey:
        return cls(tuple(map_keys))

    @property
    def is_plain(self) -> bool:
        return self.map_keys is None

    def final_key(self, prefix: StorageKeyPrefix) -> bytes:
        """The full storage key: the prefix followed by each hashed map key."""
        return prefix.to_storage_key() + b"".join(key.hashed() for key in self.map_keys or ())


class StorageEntry:
    """Base for storage entries; subclasses set PALLET, STORAGE and VALUE."""

    PALLET: ClassVar[str] = ""
    STORAGE: ClassVar[str] = ""
    VALUE: ClassVar[FieldDecoder] = _raw_value

    def key(self) -> StorageEntryKey:
        return StorageEntryKey.plain()

    @classmethod
    def decode_value(cls, data: bytes) -> Any:
        value, _ = cls.VALUE(bytes(data))
        return value


class StorageClient:
    """Reads runtime storage through an RPC connection."""

    def __init__(self, rpc: Rpc, metadata: Metadata, iter_page_size: int) -> None:
        self.rpc = rpc
        self.metadata = metadata
        self.iter_page_size = iter_page_size

    async def fetch_unhashed(
        self,
        key: bytes,
        decoder: Callable[[bytes], Any],
        block_hash: bytes | None = None,
    ) -> Any:
        """Fetch the value under a raw key and decode it; None if there is none."""
        data = await self.rpc.storage(key, block_hash)
        if data is None:
            return None
        return _decode(decoder, data)

    async def fetch_raw(self, key: bytes, block_hash: bytes | None = None) -> bytes | None:
        return await self.rpc.storage(key, block_hash)

    async def fetch(self, store: StorageEntry, block_hash: bytes | None = None) -> Any:
        """Fetch and decode a storage entry; None if it is not set."""
        key = store.key().final_key(StorageKeyPrefix.for_entry(store))
        return await self.fetch_unhashed(key, store.decode_value, block_hash)

    async def fetch_or_default(self, store: StorageEntry, block_hash: bytes | None = None) -> Any:
        """Fetch a storage entry, falling back to the default given by the metadata."""
        key = store.key().final_key(StorageKeyPrefix.for_entry(store))
        data = await self.rpc.storage(key, block_hash)
        if data is not None:
            return _decode(store.decode_value, data)
        entry_metadata = self.metadata.pallet(store.PALLET).storage(store.STORAGE)
        try:
            return store.decode_value(entry_metadata.default)
        except _DECODE_ERRORS as exc:
            raise MetadataError(MetadataError.Kind.DEFAULT_ERROR, exc) from exc

    async def query_storage(
        self, keys: list[bytes], from_hash: bytes, to_hash: bytes | None = None
    ) -> list[StorageChangeSet]:
        return await self.rpc.query_storage(keys, from_hash, to_hash)

    async def fetch_keys(
        self,
        entry: Any,
        count: int,
        start_key: bytes | None = None,
        block_hash: bytes | None = None,
    ) -> list[bytes]:
        """Up to ``count`` keys of a storage map in key order, after ``start_key``."""
        prefix = StorageKeyPrefix.for_entry(entry)
        return await self.rpc.storage_keys_paged(
            prefix.to_storage_key(), count, start_key, block_hash
        )

    async def iter(self, entry: Any, block_hash: bytes | None = None) -> KeyIter:
        """Iterate over the key/value pairs of a storage map at one block."""
        if block_hash is None:
            block_hash = await self.rpc.block_hash(None)
            if block_hash is None:
                raise BasicError("node returned no hash for the latest block")
        return KeyIter(self, entry, block_hash, self.iter_page_size)


class KeyIter:
    """Pages through the key/value pairs of a storage map."""

    def __init__(self, client: StorageClient, entry: Any, block_hash: bytes, count: int) -> None:
        self._client = client
        self._entry = entry
        self._hash = block_hash
        self._count = count
        self._start_key: bytes | None = None
        self._buffer: list[tuple[bytes, bytes]] = []

    async def next(self) -> tuple[bytes, Any] | None:
        """The next key and decoded value, or None when the map is exhausted."""
        while True:
            if self._buffer:
                key, data = self._buffer.pop()
                return key, _decode(self._entry.decode_value, data)
            start_key, self._start_key = self._start_key, None
            keys = await self._client.fetch_keys(self._entry, self._count, start_key, self._hash)
            if not keys:
                return None
            self._start_key = keys[-1]
            change_sets = await self._client.rpc.query_storage_at(keys, self._hash)
            for change_set in change_sets:
                self._buffer.extend(
                    (key, value) for key, value in change_set.changes if value is not None
                )

    def __aiter__(self) -> KeyIter:
        return self

    async def __anext__(self) -> tuple[bytes, Any]:
        item = await self.next()
        if item is None:
            raise StopAsyncIteration
        return item