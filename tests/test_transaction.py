from __future__ import annotations

from dataclasses import dataclass

import pytest

from subclient.codec import Event, Phase
from subclient.hashing import blake2_256
from subclient.rpc import BasicError, RpcError, SubstrateTransactionStatus, TransactionStatusKind
from subclient.transaction import (
    EventRecord,
    RuntimeError as DispatchFailure,
    TransactionError,
    TransactionEvents,
    TransactionInBlock,
    TransactionProgress,
    TransactionStatus,
)

K = TransactionStatusKind
BLOCK = b"\x0b" * 32
OTHER_EXT = b"\x04other"
OUR_EXT = b"\x04ours"
EXT_HASH = blake2_256(OUR_EXT)


def _u128(data: bytes) -> tuple[int, int]:
    return int.from_bytes(bytes(data)[:16], "little"), 16


@dataclass
class Transfer(Event):
    PALLET = "Balances"
    EVENT = "Transfer"
    FIELDS = (("amount", _u128),)
    amount: int


@dataclass
class Remarked(Event):
    PALLET = "System"
    EVENT = "Remarked"
    FIELDS = ()


class FakeSubscription:
    def __init__(self, items):
        self.items = list(items)
        self.unsubscribed = False

    async def next(self):
        return self.items.pop(0) if self.items else None

    async def unsubscribe(self):
        self.unsubscribed = True


class FakeRpc:
    def __init__(self, blocks):
        self.blocks = blocks

    async def block(self, block_hash):
        extrinsics = self.blocks.get(block_hash)
        if extrinsics is None:
            return None
        return {"block": {"header": {}, "extrinsics": ["0x" + e.hex() for e in extrinsics]}}


def _records(records):
    async def fetch(block_hash):
        assert block_hash == BLOCK
        return records

    return fetch


def _progress(statuses, records=(), blocks=None):
    sub = FakeSubscription(statuses)
    rpc = FakeRpc({BLOCK: [OTHER_EXT, OUR_EXT]} if blocks is None else blocks)
    return TransactionProgress(sub, EXT_HASH, rpc, _records(list(records))), sub


def _amount(value: int) -> bytes:
    return value.to_bytes(16, "little")


@pytest.mark.asyncio
async def test_next_item_maps_statuses():
    progress, _ = _progress(
        [
            SubstrateTransactionStatus(K.READY),
            SubstrateTransactionStatus(K.BROADCAST, peers=("peer-a",)),
            SubstrateTransactionStatus(K.IN_BLOCK, hash=BLOCK),
        ]
    )
    ready = await progress.next_item()
    assert ready.kind is K.READY and ready.details is None
    broadcast = await progress.next_item()
    assert broadcast.peers == ("peer-a",)
    in_block = await progress.next_item()
    assert in_block.as_finalized() is None
    details = in_block.as_in_block()
    assert details.block_hash() == BLOCK
    assert details.extrinsic_hash() == EXT_HASH
    assert await progress.next_item() is None


@pytest.mark.asyncio
async def test_wait_for_in_block_ignores_non_final_statuses():
    progress, _ = _progress(
        [
            SubstrateTransactionStatus(K.FUTURE),
            SubstrateTransactionStatus(K.INVALID),
            SubstrateTransactionStatus(K.USURPED, hash=b"\x01" * 32),
            SubstrateTransactionStatus(K.IN_BLOCK, hash=BLOCK),
        ]
    )
    in_block = await progress.wait_for_in_block()
    assert in_block.block_hash() == BLOCK


@pytest.mark.asyncio
async def test_wait_for_finalized_ends_subscription():
    progress, sub = _progress(
        [
            SubstrateTransactionStatus(K.IN_BLOCK, hash=b"\x02" * 32),
            SubstrateTransactionStatus(K.FINALIZED, hash=BLOCK),
            SubstrateTransactionStatus(K.READY),
        ]
    )
    finalized = await progress.wait_for_finalized()
    assert finalized.block_hash() == BLOCK
    assert sub.unsubscribed is True
    assert await progress.next_item() is None


@pytest.mark.asyncio
async def test_finality_timeout_raises():
    progress, sub = _progress([SubstrateTransactionStatus(K.FINALITY_TIMEOUT, hash=BLOCK)])
    with pytest.raises(TransactionError) as info:
        await progress.wait_for_finalized()
    assert info.value.kind is TransactionError.Kind.FINALITY_SUBSCRIPTION_TIMEOUT
    assert sub.unsubscribed is True


@pytest.mark.asyncio
async def test_dropped_subscription_raises():
    progress, _ = _progress([SubstrateTransactionStatus(K.READY)])
    with pytest.raises(RpcError, match="RPC subscription dropped"):
        await progress.wait_for_in_block()


@pytest.mark.asyncio
async def test_async_iteration_yields_all_statuses():
    progress, _ = _progress(
        [SubstrateTransactionStatus(K.READY), SubstrateTransactionStatus(K.DROPPED)]
    )
    kinds = [status.kind async for status in progress]
    assert kinds == [K.READY, K.DROPPED]


@pytest.mark.asyncio
async def test_fetch_events_filters_by_extrinsic_phase():
    ours = EventRecord(Phase.apply_extrinsic(1), "Balances", "Transfer", _amount(10_000))
    theirs = EventRecord(Phase.apply_extrinsic(0), "Balances", "Transfer", _amount(5))
    final = EventRecord(Phase.finalization(), "System", "Remarked")
    in_block = TransactionInBlock(
        BLOCK, EXT_HASH, FakeRpc({BLOCK: [OTHER_EXT, OUR_EXT]}), _records([theirs, ours, final])
    )
    events = await in_block.fetch_events()
    assert events.extrinsic_index == 1
    assert events.block_hash() == BLOCK
    assert events.extrinsic_hash() == EXT_HASH
    assert list(events.iter()) == [ours]
    assert events.all_events_in_block() == (theirs, ours, final)


@pytest.mark.asyncio
async def test_fetch_events_missing_block():
    in_block = TransactionInBlock(BLOCK, EXT_HASH, FakeRpc({}), _records([]))
    with pytest.raises(TransactionError) as info:
        await in_block.fetch_events()
    assert info.value.kind is TransactionError.Kind.BLOCK_HASH_NOT_FOUND


@pytest.mark.asyncio
async def test_fetch_events_extrinsic_not_in_block():
    in_block = TransactionInBlock(BLOCK, EXT_HASH, FakeRpc({BLOCK: [OTHER_EXT]}), _records([]))
    with pytest.raises(TransactionError) as info:
        await in_block.fetch_events()
    assert info.value.kind is TransactionError.Kind.BLOCK_HASH_NOT_FOUND


@pytest.mark.asyncio
async def test_wait_for_success_raises_runtime_error():
    failed = EventRecord(Phase.apply_extrinsic(1), "System", "ExtrinsicFailed", b"\x03\x07")
    in_block = TransactionInBlock(
        BLOCK, EXT_HASH, FakeRpc({BLOCK: [OTHER_EXT, OUR_EXT]}), _records([failed])
    )
    with pytest.raises(DispatchFailure) as info:
        await in_block.wait_for_success(lambda data: ("module", data[0], data[1]))
    assert info.value.inner == ("module", 3, 7)


@pytest.mark.asyncio
async def test_wait_for_success_ignores_other_extrinsic_failures():
    failed = EventRecord(Phase.apply_extrinsic(0), "System", "ExtrinsicFailed", b"\x01")
    ok = EventRecord(Phase.apply_extrinsic(1), "System", "ExtrinsicSuccess")
    in_block = TransactionInBlock(
        BLOCK, EXT_HASH, FakeRpc({BLOCK: [OTHER_EXT, OUR_EXT]}), _records([failed, ok])
    )
    events = await in_block.wait_for_success()
    assert list(events.iter()) == [ok]


@pytest.mark.asyncio
async def test_wait_for_success_undecodable_error():
    failed = EventRecord(Phase.apply_extrinsic(1), "System", "ExtrinsicFailed", b"")
    in_block = TransactionInBlock(
        BLOCK, EXT_HASH, FakeRpc({BLOCK: [OTHER_EXT, OUR_EXT]}), _records([failed])
    )

    def decoder(data):
        return data[0]

    with pytest.raises(BasicError):
        await in_block.wait_for_success(decoder)


@pytest.mark.asyncio
async def test_wait_for_finalized_success_finds_transfer():
    records = [
        EventRecord(Phase.apply_extrinsic(0), "Balances", "Transfer", _amount(1)),
        EventRecord(Phase.apply_extrinsic(1), "Balances", "Transfer", _amount(10_000)),
        EventRecord(Phase.apply_extrinsic(1), "System", "ExtrinsicSuccess"),
    ]
    progress, _ = _progress(
        [
            SubstrateTransactionStatus(K.IN_BLOCK, hash=BLOCK),
            SubstrateTransactionStatus(K.FINALIZED, hash=BLOCK),
        ],
        records,
    )
    events = await progress.wait_for_finalized_success()
    assert events.find_first_event(Transfer) == Transfer(amount=10_000)
    assert list(events.find(Transfer)) == [Transfer(amount=10_000)]
    assert events.has(Transfer) is True
    assert events.has(Remarked) is False


def test_transaction_events_find_first_none_and_decode_error():
    bad = EventRecord(Phase.apply_extrinsic(2), "Balances", "Transfer", b"")
    events = TransactionEvents(BLOCK, EXT_HASH, 2, [bad])
    assert events.find_first_event(Remarked) is None
    with pytest.raises(BasicError):
        events.find_first_event(Transfer)


def test_status_accessors_for_finalized():
    details = TransactionInBlock(BLOCK, EXT_HASH, FakeRpc({}), _records([]))
    status = TransactionStatus(K.FINALIZED, BLOCK, (), details)
    assert status.as_finalized() is details
    assert status.as_in_block() is None