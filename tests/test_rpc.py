import contextlib
import json

import pytest
import websockets

from subclient.codec import Encoded
from subclient.rpc import (
    BasicError,
    BlockNumber,
    NumberOrHex,
    ReadProof,
    Rpc,
    RpcError,
    RuntimeVersion,
    StorageChangeSet,
    SubstrateTransactionStatus,
    TransactionStatusKind,
    ws_client,
)


class _NodeError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code
        self.message = message


@contextlib.asynccontextmanager
async def fake_node(handlers, subscriptions=None):
    calls = []
    subscriptions = subscriptions or {}

    async def handler(ws, *_):
        async for raw in ws:
            msg = json.loads(raw)
            method, params = msg["method"], msg.get("params", [])
            calls.append((method, params))
            if method in subscriptions:
                sub_id = f"sub-{msg['id']}"
                await ws.send(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": sub_id}))
                for item in subscriptions[method]:
                    note = {
                        "jsonrpc": "2.0",
                        "method": method + "_notification",
                        "params": {"subscription": sub_id, "result": item},
                    }
                    await ws.send(json.dumps(note))
                continue
            func = handlers.get(method)
            if func is None:
                reply = {"jsonrpc": "2.0", "id": msg["id"],
                         "error": {"code": -32601, "message": "Method not found"}}
            else:
                try:
                    reply = {"jsonrpc": "2.0", "id": msg["id"], "result": func(params)}
                except _NodeError as exc:
                    reply = {"jsonrpc": "2.0", "id": msg["id"],
                             "error": {"code": exc.code, "message": exc.message}}
            await ws.send(json.dumps(reply))

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}", calls


def test_deser_runtime_version():
    val = RuntimeVersion.from_json(
        json.loads('{"specVersion": 123, "transactionVersion": 456, "foo": true, "wibble": [1,2,3]}')
    )
    assert val == RuntimeVersion(
        spec_version=123, transaction_version=456, other={"foo": True, "wibble": [1, 2, 3]}
    )


def test_runtime_version_missing_field():
    with pytest.raises(BasicError):
        RuntimeVersion.from_json({"specVersion": 1})


def test_number_or_hex_round_trip():
    assert NumberOrHex.from_json(5) == NumberOrHex(5)
    assert NumberOrHex.from_json("0x10") == NumberOrHex(16, is_hex=True)
    assert NumberOrHex(255, is_hex=True).to_json() == "0xff"
    assert NumberOrHex(0, is_hex=True).to_json() == "0x0"
    assert NumberOrHex(7).to_json() == 7


@pytest.mark.parametrize("value", [2**64, -1, "10", "0x", "0xzz", True])
def test_number_or_hex_rejects(value):
    with pytest.raises(BasicError):
        NumberOrHex.from_json(value)


def test_block_number():
    assert BlockNumber(7).to_json() == 7
    assert BlockNumber(NumberOrHex(300, is_hex=True)).to_json() == "0x12c"
    with pytest.raises(ValueError):
        BlockNumber(2**32)


def test_transaction_status_from_json():
    assert SubstrateTransactionStatus.from_json("ready").kind is TransactionStatusKind.READY
    in_block = SubstrateTransactionStatus.from_json({"inBlock": "0xab"})
    assert in_block == SubstrateTransactionStatus(TransactionStatusKind.IN_BLOCK, hash=b"\xab")
    broadcast = SubstrateTransactionStatus.from_json({"broadcast": ["a", "b"]})
    assert broadcast.peers == ("a", "b")
    with pytest.raises(BasicError):
        SubstrateTransactionStatus.from_json("bogus")
    with pytest.raises(BasicError):
        SubstrateTransactionStatus.from_json("finalized")


def test_read_proof_and_change_set():
    proof = ReadProof.from_json({"at": "0x01", "proof": ["0x0203", "0x"]})
    assert proof == ReadProof(at=b"\x01", proof=(b"\x02\x03", b""))
    change_set = StorageChangeSet.from_json(
        {"block": "0xff", "changes": [["0x01", "0x02"], ["0x03", None]]}
    )
    assert change_set.block == b"\xff"
    assert change_set.changes == ((b"\x01", b"\x02"), (b"\x03", None))


@pytest.mark.asyncio
async def test_fetch_system_info():
    handlers = {
        "system_chain": lambda p: "Development",
        "system_name": lambda p: "Substrate Node",
        "system_version": lambda p: "3.0.0-dev",
    }
    async with fake_node(handlers) as (url, _):
        async with await ws_client(url) as client:
            rpc = Rpc(client)
            assert await rpc.system_chain() == "Development"
            assert await rpc.system_name() == "Substrate Node"
            assert len(await rpc.system_version()) > 0


@pytest.mark.asyncio
async def test_fetch_block_hash_and_block():
    handlers = {
        "chain_getBlockHash": lambda p: "0xaabb",
        "chain_getBlock": lambda p: {"block": {"extrinsics": []}, "justifications": None},
    }
    async with fake_node(handlers) as (url, calls):
        async with await ws_client(url) as client:
            rpc = Rpc(client)
            block_hash = await rpc.block_hash(None)
            assert block_hash == b"\xaa\xbb"
            block = await rpc.block(block_hash)
            assert block["block"]["extrinsics"] == []
            await rpc.block_hash(BlockNumber(3))
    assert calls[0] == ("chain_getBlockHash", [None])
    assert calls[1] == ("chain_getBlock", ["0xaabb"])
    assert calls[2] == ("chain_getBlockHash", [3])


@pytest.mark.asyncio
async def test_block_hash_list_is_error():
    async with fake_node({"chain_getBlockHash": lambda p: ["0x01"]}) as (url, _):
        async with await ws_client(url) as client:
            with pytest.raises(BasicError, match="Expected a Value, got a List"):
                await Rpc(client).block_hash(None)


@pytest.mark.asyncio
async def test_genesis_hash():
    async with fake_node({"chain_getBlockHash": lambda p: None}) as (url, calls):
        async with await ws_client(url) as client:
            with pytest.raises(BasicError, match="Genesis hash not found"):
                await Rpc(client).genesis_hash()
    assert calls == [("chain_getBlockHash", [0])]


@pytest.mark.asyncio
async def test_fetch_read_proof():
    handlers = {"state_getReadProof": lambda p: {"at": p[1], "proof": ["0x0102"]}}
    async with fake_node(handlers) as (url, _):
        async with await ws_client(url) as client:
            proof = await Rpc(client).read_proof([b":heappages", b":extrinsic_index"], b"\x01")
    assert proof == ReadProof(at=b"\x01", proof=(b"\x01\x02",))


@pytest.mark.asyncio
async def test_fetch_keys_paged():
    keys = [f"0x{i:02x}" for i in range(10)]
    handlers = {"state_getKeysPaged": lambda p: keys[: p[1]]}
    async with fake_node(handlers) as (url, calls):
        async with await ws_client(url) as client:
            result = await Rpc(client).storage_keys_paged(b"\xff", 4)
    assert len(result) == 4
    assert result[0] == b"\x00"
    assert calls == [("state_getKeysPaged", ["0xff", 4, None, None])]


@pytest.mark.asyncio
async def test_storage_value_and_missing():
    store = {"0x01": "0x2a"}
    async with fake_node({"state_getStorage": lambda p: store.get(p[0])}) as (url, _):
        async with await ws_client(url) as client:
            rpc = Rpc(client)
            assert await rpc.storage(b"\x01") == b"\x2a"
            assert await rpc.storage(b"\x02") is None


@pytest.mark.asyncio
async def test_insert_key():
    keystore = set()

    def insert(params):
        keystore.add((params[2], params[0]))
        return None

    handlers = {
        "author_insertKey": insert,
        "author_hasKey": lambda p: (p[0], p[1]) in keystore,
    }
    public = bytes(range(32))
    async with fake_node(handlers) as (url, _):
        async with await ws_client(url) as client:
            rpc = Rpc(client)
            assert await rpc.has_key(public, "aura") is False
            await rpc.insert_key("aura", "//Alice", public)
            assert await rpc.has_key(public, "aura") is True


@pytest.mark.asyncio
async def test_rpc_error_response():
    async with fake_node({}) as (url, _):
        async with await ws_client(url) as client:
            with pytest.raises(RpcError) as info:
                await Rpc(client).rotate_keys()
    assert info.value.code == -32601


@pytest.mark.asyncio
async def test_chain_subscribe_blocks():
    headers = [{"number": "0x1"}, {"number": "0x2"}]
    subs = {"chain_subscribeNewHeads": headers}
    async with fake_node({"chain_unsubscribeNewHeads": lambda p: True}, subs) as (url, calls):
        async with await ws_client(url) as client:
            blocks = await Rpc(client).subscribe_blocks()
            assert await blocks.next() == {"number": "0x1"}
            assert await blocks.next() == {"number": "0x2"}
            await blocks.unsubscribe()
            assert await blocks.next() is None
    assert calls[-1] == ("chain_unsubscribeNewHeads", ["sub-1"])


@pytest.mark.asyncio
async def test_chain_subscribe_finalized_blocks():
    subs = {"chain_subscribeFinalizedHeads": [{"number": "0x5"}]}
    async with fake_node({}, subs) as (url, _):
        async with await ws_client(url) as client:
            blocks = await Rpc(client).subscribe_finalized_blocks()
            assert await blocks.next() == {"number": "0x5"}


@pytest.mark.asyncio
async def test_watch_extrinsic():
    subs = {"author_submitAndWatchExtrinsic": ["ready", {"inBlock": "0x01"}, {"finalized": "0x01"}]}
    async with fake_node({}, subs) as (url, calls):
        async with await ws_client(url) as client:
            progress = await Rpc(client).watch_extrinsic(Encoded(b"\x04\x05"))
            kinds = []
            async for status in progress:
                kinds.append(status.kind)
                if status.kind is TransactionStatusKind.FINALIZED:
                    assert status.hash == b"\x01"
                    break
    assert kinds == [
        TransactionStatusKind.READY,
        TransactionStatusKind.IN_BLOCK,
        TransactionStatusKind.FINALIZED,
    ]
    assert calls[0] == ("author_submitAndWatchExtrinsic", ["0x0405"])


@pytest.mark.asyncio
async def test_submit_extrinsic():
    async with fake_node({"author_submitExtrinsic": lambda p: "0xbeef"}) as (url, calls):
        async with await ws_client(url) as client:
            assert await Rpc(client).submit_extrinsic(b"\x01\x02") == b"\xbe\xef"
    assert calls == [("author_submitExtrinsic", ["0x0102"])]


@pytest.mark.asyncio
async def test_request_after_close_fails():
    async with fake_node({"system_chain": lambda p: "Development"}) as (url, _):
        client = await ws_client(url)
        await client.close()
        with pytest.raises(RpcError):
            await client.request("system_chain", [])


@pytest.mark.asyncio
async def test_ws_client_bad_url():
    with pytest.raises(RpcError):
        await ws_client("not-a-url")