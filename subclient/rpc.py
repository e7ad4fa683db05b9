"""JSON-RPC types and a websocket client for talking to a node."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

_U32_MAX = (1 << 32) - 1
_U64_MAX = (1 << 64) - 1
_U256_MAX = (1 << 256) - 1
DEFAULT_MAX_NOTIFS_PER_SUBSCRIPTION = 4096


class BasicError(Exception):
    """A request failed or its response was not what was expected."""


class RpcError(BasicError):
    """An error reported by the RPC layer or its transport."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def _opt_hex(data: bytes | None) -> str | None:
    return None if data is None else _hex(data)


def _unhex(value: Any) -> bytes:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise BasicError(f"expected a 0x-prefixed hex string, got {value!r}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError:
        raise BasicError(f"invalid hex string {value!r}") from None


def _opt_unhex(value: Any) -> bytes | None:
    return None if value is None else _unhex(value)


def _u32(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U32_MAX:
        raise BasicError(f"{name} must be a u32, got {value!r}")
    return value


@dataclass(frozen=True)
class NumberOrHex:
    """A number sent either as a JSON number or as a hex string."""

    value: int
    is_hex: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise ValueError(f"number must be an integer, got {self.value!r}")
        limit = _U256_MAX if self.is_hex else _U64_MAX
        if not 0 <= self.value <= limit:
            raise ValueError(f"number {self.value} out of range")

    def to_json(self) -> int | str:
        return hex(self.value) if self.is_hex else self.value

    @classmethod
    def from_json(cls, value: Any) -> NumberOrHex:
        if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= _U64_MAX:
            return cls(value)
        if isinstance(value, str) and value.startswith("0x") and 2 < len(value) <= 66:
            try:
                return cls(int(value[2:], 16), is_hex=True)
            except ValueError:
                pass
        raise BasicError(f"expected a u64 or a hex encoded U256, got {value!r}")


@dataclass(frozen=True)
class BlockNumber:
    """A block number as sent to the node; built from a u32 or a NumberOrHex."""

    value: NumberOrHex

    def __post_init__(self) -> None:
        if not isinstance(self.value, NumberOrHex):
            number = self.value
            if isinstance(number, bool) or not isinstance(number, int):
                raise ValueError(f"block number must be an integer, got {number!r}")
            if not 0 <= number <= _U32_MAX:
                raise ValueError(f"block number must be a u32, got {number}")
            object.__setattr__(self, "value", NumberOrHex(number))

    def to_json(self) -> int | str:
        return self.value.to_json()


class TransactionStatusKind(enum.Enum):
    """The kinds of status a watched transaction passes through."""

    FUTURE = "future"
    READY = "ready"
    BROADCAST = "broadcast"
    IN_BLOCK = "inBlock"
    RETRACTED = "retracted"
    FINALITY_TIMEOUT = "finalityTimeout"
    FINALIZED = "finalized"
    USURPED = "usurped"
    DROPPED = "dropped"
    INVALID = "invalid"


_UNIT_STATUSES = {
    TransactionStatusKind.FUTURE,
    TransactionStatusKind.READY,
    TransactionStatusKind.DROPPED,
    TransactionStatusKind.INVALID,
}


@dataclass(frozen=True)
class SubstrateTransactionStatus:
    """A transaction status as reported by the node."""

    kind: TransactionStatusKind
    hash: bytes | None = None
    peers: tuple[str, ...] = ()

    @classmethod
    def from_json(cls, value: Any) -> SubstrateTransactionStatus:
        if isinstance(value, str):
            try:
                kind = TransactionStatusKind(value)
            except ValueError:
                raise BasicError(f"unknown transaction status {value!r}") from None
            if kind not in _UNIT_STATUSES:
                raise BasicError(f"transaction status {value!r} needs a value")
            return cls(kind)
        if isinstance(value, dict) and len(value) == 1:
            ((name, inner),) = value.items()
            try:
                kind = TransactionStatusKind(name)
            except ValueError:
                raise BasicError(f"unknown transaction status {name!r}") from None
            if kind in _UNIT_STATUSES:
                raise BasicError(f"transaction status {name!r} takes no value")
            if kind is TransactionStatusKind.BROADCAST:
                if not isinstance(inner, list) or not all(isinstance(p, str) for p in inner):
                    raise BasicError(f"broadcast peers must be a list of strings, got {inner!r}")
                return cls(kind, peers=tuple(inner))
            return cls(kind, hash=_unhex(inner))
        raise BasicError(f"malformed transaction status {value!r}")


@dataclass(frozen=True)
class RuntimeVersion:
    """Runtime version details needed to build transactions."""

    spec_version: int
    transaction_version: int
    other: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, value: Any) -> RuntimeVersion:
        if not isinstance(value, dict):
            raise BasicError(f"runtime version must be an object, got {value!r}")
        try:
            spec_version = value["specVersion"]
            transaction_version = value["transactionVersion"]
        except KeyError as exc:
            raise BasicError(f"runtime version is missing {exc.args[0]}") from None
        other = {
            key: item
            for key, item in value.items()
            if key not in ("specVersion", "transactionVersion")
        }
        return cls(
            _u32(spec_version, "specVersion"),
            _u32(transaction_version, "transactionVersion"),
            other,
        )


@dataclass(frozen=True)
class ReadProof:
    """A proof that storage entries are part of a block's state."""

    at: bytes
    proof: tuple[bytes, ...]

    @classmethod
    def from_json(cls, value: Any) -> ReadProof:
        if not isinstance(value, dict) or not isinstance(value.get("proof"), list):
            raise BasicError(f"malformed read proof {value!r}")
        return cls(_unhex(value.get("at")), tuple(_unhex(item) for item in value["proof"]))


@dataclass(frozen=True)
class StorageChangeSet:
    """Storage values that changed in one block; a None value means removed."""

    block: bytes
    changes: tuple[tuple[bytes, bytes | None], ...]

    @classmethod
    def from_json(cls, value: Any) -> StorageChangeSet:
        if not isinstance(value, dict) or not isinstance(value.get("changes"), list):
            raise BasicError(f"malformed storage change set {value!r}")
        changes = []
        for change in value["changes"]:
            if not isinstance(change, list) or len(change) != 2:
                raise BasicError(f"malformed storage change {change!r}")
            key, data = change
            changes.append((_unhex(key), _opt_unhex(data)))
        return cls(_unhex(value.get("block")), tuple(changes))


_END = object()


class Subscription:
    """A stream of notifications; ``next`` returns None once it has ended."""

    def __init__(
        self,
        unsubscribe: Callable[[], Awaitable[None]] | None = None,
        max_buffered: int = DEFAULT_MAX_NOTIFS_PER_SUBSCRIPTION,
    ) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._unsubscribe = unsubscribe
        self._max_buffered = max_buffered
        self._decoder: Callable[[Any], Any] = lambda item: item
        self._error: BaseException | None = None
        self._ended = False
        self._finished = False

    def _decoded(self, decoder: Callable[[Any], Any]) -> Subscription:
        self._decoder = decoder
        return self

    def _push(self, item: Any) -> None:
        if self._ended:
            return
        if self._queue.qsize() >= self._max_buffered:
            self._end(RpcError("subscription buffer is full; notifications were lost"))
            return
        self._queue.put_nowait(item)

    def _end(self, error: BaseException | None = None) -> None:
        if self._ended:
            return
        self._ended = True
        self._error = error
        self._queue.put_nowait(_END)

    async def next(self) -> Any:
        """Return the next notification, or None when the subscription is over."""
        if self._finished:
            return None
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            if self._error is not None:
                error, self._error = self._error, None
                raise error
            return None
        try:
            return self._decoder(item)
        except BasicError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise BasicError(f"cannot decode notification {item!r}: {exc}") from exc

    async def unsubscribe(self) -> None:
        """Stop receiving notifications and tell the node."""
        if self._ended:
            return
        self._end()
        if self._unsubscribe is not None:
            await self._unsubscribe()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Any:
        item = await self.next()
        if item is None:
            raise StopAsyncIteration
        return item


class WsRpcClient:
    """A JSON-RPC 2.0 client over a websocket connection."""

    def __init__(
        self,
        connection: Any,
        max_notifs_per_subscription: int = DEFAULT_MAX_NOTIFS_PER_SUBSCRIPTION,
    ) -> None:
        self._conn = connection
        self._max_notifs = max_notifs_per_subscription
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscriptions: dict[Any, Subscription] = {}
        self._early: dict[Any, list[Any]] = {}
        self._closed: RpcError | None = None
        self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        error = RpcError("connection closed")
        try:
            async for raw in self._conn:
                self._dispatch(raw)
        except ConnectionClosed as exc:
            error = RpcError(f"connection closed: {exc}")
        finally:
            self._shutdown(error)

    def _shutdown(self, error: RpcError) -> None:
        if self._closed is None:
            self._closed = error
        for future in self._pending.values():
            if not future.done():
                future.set_exception(self._closed)
        self._pending.clear()
        for subscription in self._subscriptions.values():
            subscription._end()
        self._subscriptions.clear()
        self._early.clear()

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("ignoring malformed message from node: %r", raw)
            return
        if not isinstance(message, dict):
            return
        if "id" in message and ("result" in message or "error" in message):
            future = self._pending.pop(message["id"], None)
            if future is None or future.done():
                return
            error = message.get("error")
            if error is not None:
                if isinstance(error, dict):
                    future.set_exception(
                        RpcError(str(error.get("message")), error.get("code"), error.get("data"))
                    )
                else:
                    future.set_exception(RpcError(str(error)))
            else:
                future.set_result(message.get("result"))
            return
        params = message.get("params")
        if "method" in message and isinstance(params, dict) and "subscription" in params:
            sub_id = params["subscription"]
            result = params.get("result")
            subscription = self._subscriptions.get(sub_id)
            if subscription is not None:
                subscription._push(result)
            else:
                self._early.setdefault(sub_id, []).append(result)

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        """Send a request and return its result."""
        if self._closed is not None:
            raise self._closed
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        try:
            await self._conn.send(json.dumps(payload))
        except ConnectionClosed as exc:
            self._pending.pop(request_id, None)
            raise RpcError(f"connection closed: {exc}") from exc
        return await future

    async def subscribe(
        self, method: str, params: list[Any] | None, unsubscribe_method: str
    ) -> Subscription:
        """Start a subscription; its notifications arrive through the returned object."""
        sub_id = await self.request(method, params)
        if not isinstance(sub_id, (str, int)) or isinstance(sub_id, bool):
            raise RpcError(f"invalid subscription id {sub_id!r}")

        async def unsubscribe() -> None:
            self._subscriptions.pop(sub_id, None)
            if self._closed is None:
                with contextlib.suppress(RpcError):
                    await self.request(unsubscribe_method, [sub_id])

        subscription = Subscription(unsubscribe, self._max_notifs)
        if self._closed is not None:
            subscription._end()
            return subscription
        self._subscriptions[sub_id] = subscription
        for item in self._early.pop(sub_id, []):
            subscription._push(item)
        return subscription

    async def close(self) -> None:
        """Close the connection; pending requests fail and subscriptions end."""
        with contextlib.suppress(Exception):
            await self._conn.close()
        if not self._reader.done():
            self._reader.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await self._reader
        self._shutdown(RpcError("client closed"))

    async def __aenter__(self) -> WsRpcClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def ws_client(url: str) -> WsRpcClient:
    """Connect to a node's websocket RPC endpoint."""
    try:
        connection = await websockets.connect(url, max_size=None)
    except (OSError, WebSocketException, asyncio.TimeoutError, ValueError) as exc:
        raise RpcError(f"transport error connecting to {url}: {exc}") from exc
    return WsRpcClient(connection, DEFAULT_MAX_NOTIFS_PER_SUBSCRIPTION)


def _encode_extrinsic(extrinsic: Any) -> bytes:
    if isinstance(extrinsic, (bytes, bytearray, memoryview)):
        return bytes(extrinsic)
    return bytes(extrinsic.encode())


def _block_number_json(block_number: Any) -> Any:
    if block_number is None:
        return None
    if isinstance(block_number, NumberOrHex):
        block_number = BlockNumber(block_number)
    elif not isinstance(block_number, BlockNumber):
        block_number = BlockNumber(block_number)
    return block_number.to_json()


def _expect(value: Any, kind: type | tuple[type, ...], what: str) -> Any:
    if not isinstance(value, kind):
        raise BasicError(f"expected {what}, got {value!r}")
    return value


class Rpc:
    """Typed calls to the node's RPC interface."""

    def __init__(self, client: Any) -> None:
        self.client = client

    async def storage(self, key: bytes, block_hash: bytes | None = None) -> bytes | None:
        data = await self.client.request("state_getStorage", [_hex(key), _opt_hex(block_hash)])
        return _opt_unhex(data)

    async def storage_keys_paged(
        self,
        prefix: bytes | None,
        count: int,
        start_key: bytes | None = None,
        block_hash: bytes | None = None,
    ) -> list[bytes]:
        """Up to ``count`` keys under ``prefix``, after ``start_key`` in key order."""
        if isinstance(count, bool) or not isinstance(count, int) or not 0 <= count <= _U32_MAX:
            raise ValueError(f"count must be a u32, got {count!r}")
        params = [_opt_hex(prefix), count, _opt_hex(start_key), _opt_hex(block_hash)]
        keys = await self.client.request("state_getKeysPaged", params)
        return [_unhex(key) for key in _expect(keys, list, "a list of keys")]

    async def query_storage(
        self, keys: list[bytes], from_hash: bytes, to_hash: bytes | None = None
    ) -> list[StorageChangeSet]:
        params = [[_hex(key) for key in keys], _hex(from_hash), _opt_hex(to_hash)]
        result = await self.client.request("state_queryStorage", params)
        return [StorageChangeSet.from_json(item) for item in _expect(result, list, "a list")]

    async def query_storage_at(
        self, keys: list[bytes], at: bytes | None = None
    ) -> list[StorageChangeSet]:
        params = [[_hex(key) for key in keys], _opt_hex(at)]
        result = await self.client.request("state_queryStorageAt", params)
        return [StorageChangeSet.from_json(item) for item in _expect(result, list, "a list")]

    async def genesis_hash(self) -> bytes:
        result = await self.client.request("chain_getBlockHash", [NumberOrHex(0).to_json()])
        if isinstance(result, list):
            raise BasicError("Expected a Value, got a List")
        if result is None:
            raise BasicError("Genesis hash not found")
        return _unhex(result)

    async def metadata_bytes(self) -> bytes:
        """The SCALE encoded runtime metadata."""
        return _unhex(await self.client.request("state_getMetadata", []))

    async def system_properties(self) -> dict[str, Any]:
        result = await self.client.request("system_properties", [])
        return _expect(result, dict, "an object of system properties")

    async def system_chain(self) -> str:
        return _expect(await self.client.request("system_chain", []), str, "a string")

    async def system_name(self) -> str:
        return _expect(await self.client.request("system_name", []), str, "a string")

    async def system_version(self) -> str:
        return _expect(await self.client.request("system_version", []), str, "a string")

    async def header(self, block_hash: bytes | None = None) -> dict[str, Any] | None:
        result = await self.client.request("chain_getHeader", [_opt_hex(block_hash)])
        return None if result is None else _expect(result, dict, "a header object")

    async def block_hash(self, block_number: Any = None) -> bytes | None:
        """Hash of the given block, or of the latest block when none is given."""
        result = await self.client.request(
            "chain_getBlockHash", [_block_number_json(block_number)]
        )
        if isinstance(result, list):
            raise BasicError("Expected a Value, got a List")
        return _opt_unhex(result)

    async def finalized_head(self) -> bytes:
        return _unhex(await self.client.request("chain_getFinalizedHead", []))

    async def block(self, block_hash: bytes | None = None) -> dict[str, Any] | None:
        result = await self.client.request("chain_getBlock", [_opt_hex(block_hash)])
        return None if result is None else _expect(result, dict, "a block object")

    async def read_proof(self, keys: list[bytes], block_hash: bytes | None = None) -> ReadProof:
        params = [[_hex(key) for key in keys], _opt_hex(block_hash)]
        return ReadProof.from_json(await self.client.request("state_getReadProof", params))

    async def runtime_version(self, at: bytes | None = None) -> RuntimeVersion:
        result = await self.client.request("state_getRuntimeVersion", [_opt_hex(at)])
        return RuntimeVersion.from_json(result)

    async def subscribe_blocks(self) -> Subscription:
        return await self.client.subscribe(
            "chain_subscribeNewHeads", [], "chain_unsubscribeNewHeads"
        )

    async def subscribe_finalized_blocks(self) -> Subscription:
        return await self.client.subscribe(
            "chain_subscribeFinalizedHeads", [], "chain_unsubscribeFinalizedHeads"
        )

    async def submit_extrinsic(self, extrinsic: Any) -> bytes:
        params = [_hex(_encode_extrinsic(extrinsic))]
        return _unhex(await self.client.request("author_submitExtrinsic", params))

    async def watch_extrinsic(self, extrinsic: Any) -> Subscription:
        """Submit an extrinsic; the subscription yields SubstrateTransactionStatus values."""
        params = [_hex(_encode_extrinsic(extrinsic))]
        subscription = await self.client.subscribe(
            "author_submitAndWatchExtrinsic", params, "author_unwatchExtrinsic"
        )
        return subscription._decoded(SubstrateTransactionStatus.from_json)

    async def insert_key(self, key_type: str, suri: str, public: bytes) -> None:
        await self.client.request("author_insertKey", [key_type, suri, _hex(public)])

    async def rotate_keys(self) -> bytes:
        return _unhex(await self.client.request("author_rotateKeys", []))

    async def has_session_keys(self, session_keys: bytes) -> bool:
        result = await self.client.request("author_hasSessionKeys", [_hex(session_keys)])
        return _expect(result, bool, "a boolean")

    async def has_key(self, public_key: bytes, key_type: str) -> bool:
        result = await self.client.request("author_hasKey", [_hex(public_key), key_type])
        return _expect(result, bool, "a boolean")