"""Following a submitted transaction until it is in a block, and reading its events."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Iterator

from subclient.codec import Event, Phase
from subclient.hashing import blake2_256
from subclient.rpc import BasicError, RpcError, SubstrateTransactionStatus, TransactionStatusKind

EventsFetcher = Callable[[bytes], Awaitable[Iterable["EventRecord"]]]
ErrorDecoder = Callable[[bytes], Any]

_DECODE_ERRORS = (ValueError, IndexError, struct.error)


class TransactionError(BasicError):
    """The transaction could not be followed to a conclusion."""

    class Kind(enum.Enum):
        FINALITY_SUBSCRIPTION_TIMEOUT = (
            "The finality subscription expired (after ~512 blocks we give up if the "
            "block hasn't yet been finalized)."
        )
        BLOCK_HASH_NOT_FOUND = (
            "The block containing the transaction can no longer be found (perhaps it "
            "was on a non-finalized fork?)"
        )

    def __init__(self, kind: TransactionError.Kind) -> None:
        self.kind = kind
        super().__init__(kind.value)


class RuntimeError(Exception):  # noqa: A001 - the runtime's own dispatch error
    """The runtime reported that the extrinsic failed; ``inner`` holds the decoded error."""

    def __init__(self, inner: Any) -> None:
        self.inner = inner
        super().__init__(f"Runtime error: {inner!r}")


@dataclass(frozen=True)
class EventRecord:
    """One event of a block, with the phase it was emitted in and its encoded fields."""

    phase: Phase
    pallet: str
    variant: str
    data: bytes = b""

    def as_event(self, event_type: type[Event]) -> Event | None:
        """Decode the event as ``event_type`` if it names this event, else None."""
        if not event_type.is_event(self.pallet, self.variant):
            return None
        try:
            return event_type.decode(self.data)
        except _DECODE_ERRORS as exc:
            raise BasicError(
                f"cannot decode {self.pallet}.{self.variant} event: {exc}"
            ) from exc


class TransactionEvents:
    """The events of the block a transaction made it into."""

    def __init__(
        self, block_hash: bytes, ext_hash: bytes, ext_idx: int, events: Iterable[EventRecord]
    ) -> None:
        self._block_hash = bytes(block_hash)
        self._ext_hash = bytes(ext_hash)
        self._ext_idx = ext_idx
        self._events = tuple(events)

    def block_hash(self) -> bytes:
        return self._block_hash

    def extrinsic_hash(self) -> bytes:
        return self._ext_hash

    @property
    def extrinsic_index(self) -> int:
        return self._ext_idx

    def all_events_in_block(self) -> tuple[EventRecord, ...]:
        return self._events

    def iter(self) -> Iterator[EventRecord]:
        """The events emitted while applying this transaction."""
        phase = Phase.apply_extrinsic(self._ext_idx)
        return (record for record in self._events if record.phase == phase)

    def __iter__(self) -> Iterator[EventRecord]:
        return self.iter()

    def find(self, event_type: type[Event]) -> Iterator[Event]:
        """Every event of this transaction that decodes as ``event_type``."""
        for record in self.iter():
            event = record.as_event(event_type)
            if event is not None:
                yield event

    def find_first_event(self, event_type: type[Event]) -> Event | None:
        return next(self.find(event_type), None)

    def has(self, event_type: type[Event]) -> bool:
        return self.find_first_event(event_type) is not None


def _extrinsics_of(block: Any) -> list[bytes]:
    try:
        extrinsics = block["block"]["extrinsics"]
    except (KeyError, TypeError):
        raise BasicError(f"malformed block {block!r}") from None
    if not isinstance(extrinsics, list):
        raise BasicError(f"malformed extrinsics list {extrinsics!r}")
    result = []
    for item in extrinsics:
        if not isinstance(item, str) or not item.startswith("0x"):
            raise BasicError(f"malformed extrinsic {item!r}")
        try:
            result.append(bytes.fromhex(item[2:]))
        except ValueError:
            raise BasicError(f"malformed extrinsic {item!r}") from None
    return result


class TransactionInBlock:
    """A transaction that has made it into a block."""

    def __init__(
        self,
        block_hash: bytes,
        ext_hash: bytes,
        rpc: Any,
        fetch_events_at: EventsFetcher,
        hasher: Callable[[bytes], bytes] = blake2_256,
    ) -> None:
        self._block_hash = bytes(block_hash)
        self._ext_hash = bytes(ext_hash)
        self._rpc = rpc
        self._fetch_events_at = fetch_events_at
        self._hasher = hasher

    def __repr__(self) -> str:
        return (
            f"TransactionInBlock(block_hash=0x{self._block_hash.hex()}, "
            f"extrinsic_hash=0x{self._ext_hash.hex()})"
        )

    def block_hash(self) -> bytes:
        return self._block_hash

    def extrinsic_hash(self) -> bytes:
        return self._ext_hash

    async def fetch_events(self) -> TransactionEvents:
        """All events of the block, tied to the transaction's position in it."""
        block = await self._rpc.block(self._block_hash)
        if block is None:
            raise TransactionError(TransactionError.Kind.BLOCK_HASH_NOT_FOUND)
        ext_idx = next(
            (
                index
                for index, extrinsic in enumerate(_extrinsics_of(block))
                if self._hasher(extrinsic) == self._ext_hash
            ),
            None,
        )
        if ext_idx is None:
            raise TransactionError(TransactionError.Kind.BLOCK_HASH_NOT_FOUND)
        events = await self._fetch_events_at(self._block_hash)
        return TransactionEvents(self._block_hash, self._ext_hash, ext_idx, events)

    async def wait_for_success(self, error_decoder: ErrorDecoder | None = None) -> TransactionEvents:
        """The transaction's events, or RuntimeError if it emitted System.ExtrinsicFailed."""
        events = await self.fetch_events()
        for record in events.iter():
            if record.pallet == "System" and record.variant == "ExtrinsicFailed":
                if error_decoder is None:
                    raise RuntimeError(record.data)
                try:
                    dispatch_error = error_decoder(record.data)
                except _DECODE_ERRORS as exc:
                    raise BasicError(f"cannot decode dispatch error: {exc}") from exc
                raise RuntimeError(dispatch_error)
        return events


@dataclass(frozen=True)
class TransactionStatus:
    """A status of a watched transaction; ``details`` is set when it is in a block."""

    kind: TransactionStatusKind
    hash: bytes | None = None
    peers: tuple[str, ...] = ()
    details: TransactionInBlock | None = None

    def as_finalized(self) -> TransactionInBlock | None:
        return self.details if self.kind is TransactionStatusKind.FINALIZED else None

    def as_in_block(self) -> TransactionInBlock | None:
        return self.details if self.kind is TransactionStatusKind.IN_BLOCK else None


_FINAL_KINDS = (TransactionStatusKind.FINALITY_TIMEOUT, TransactionStatusKind.FINALIZED)
_BLOCK_KINDS = (TransactionStatusKind.IN_BLOCK, TransactionStatusKind.FINALIZED)


class TransactionProgress:
    """The statuses a submitted transaction passes through."""

    def __init__(
        self,
        sub: Any,
        ext_hash: bytes,
        rpc: Any,
        fetch_events_at: EventsFetcher,
        hasher: Callable[[bytes], bytes] = blake2_256,
    ) -> None:
        self._sub = sub
        self._ext_hash = bytes(ext_hash)
        self._rpc = rpc
        self._fetch_events_at = fetch_events_at
        self._hasher = hasher

    async def next_item(self) -> TransactionStatus | None:
        """The next status, or None once the stream has ended."""
        if self._sub is None:
            return None
        status: SubstrateTransactionStatus | None = await self._sub.next()
        if status is None:
            self._sub = None
            return None
        kind = status.kind
        if kind in _FINAL_KINDS:
            sub, self._sub = self._sub, None
            await sub.unsubscribe()
        details = None
        if kind in _BLOCK_KINDS:
            details = TransactionInBlock(
                status.hash, self._ext_hash, self._rpc, self._fetch_events_at, self._hasher
            )
        return TransactionStatus(kind, status.hash, status.peers, details)

    def __aiter__(self) -> AsyncIterator[TransactionStatus]:
        return self

    async def __anext__(self) -> TransactionStatus:
        item = await self.next_item()
        if item is None:
            raise StopAsyncIteration
        return item

    async def _wait_for(self, kinds: tuple[TransactionStatusKind, ...]) -> TransactionInBlock:
        async for status in self:
            if status.kind in kinds:
                return status.details
            if status.kind is TransactionStatusKind.FINALITY_TIMEOUT:
                raise TransactionError(TransactionError.Kind.FINALITY_SUBSCRIPTION_TIMEOUT)
        raise RpcError("RPC subscription dropped")

    async def wait_for_in_block(self) -> TransactionInBlock:
        """Wait until the transaction is in a block, finalized or not."""
        return await self._wait_for(_BLOCK_KINDS)

    async def wait_for_finalized(self) -> TransactionInBlock:
        """Wait until the block holding the transaction is finalized."""
        return await self._wait_for((TransactionStatusKind.FINALIZED,))

    async def wait_for_finalized_success(
        self, error_decoder: ErrorDecoder | None = None
    ) -> TransactionEvents:
        """Wait for finalization and return the events if the transaction succeeded."""
        in_block = await self.wait_for_finalized()
        return await in_block.wait_for_success(error_decoder)