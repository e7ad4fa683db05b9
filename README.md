# subclient

An asyncio client for talking to a Substrate node over WebSocket JSON-RPC.
It covers building storage keys, reading storage, calling the node's
`chain_*`, `state_*`, `system_*` and `author_*` methods, and following a
submitted extrinsic until it is in a block.

## Modules

- `subclient.codec`: SCALE helpers (`encode_compact`, `decode_compact`,
  `encode_bytes`, `decode_bytes`), `Encoded`, `Phase`, `WrapperKeepOpaque`,
  `CodecError`, and the `Call` and `Event` base classes. A subclass declares
  `PALLET`, `FUNCTION` or `EVENT`, and `FIELDS` (a tuple of name and
  encoder/decoder pairs).
- `subclient.hashing`: the storage hashers: `StorageHasher`, `twox_64`,
  `twox_128`, `twox_256`, `blake2_128`, `blake2_256` and `hash_with`.
- `subclient.metadata`: lookups in V14 runtime metadata. `Metadata.from_runtime_metadata`
  takes a `RuntimeMetadataPrefixed`. It checks the prefix and the version and
  indexes pallets by name and events by `(pallet_index, event_index)`.
  `PalletMetadata.encode_call`, `storage` and `constant` give the call,
  storage and constant lookups. A missing entry raises `MetadataError`, and
  malformed metadata raises `InvalidMetadataError`.
- `subclient.rpc`: `ws_client(url)` connects and returns a `WsRpcClient`
  with `request`, `subscribe` and `close`. The client can also be used with
  `async with`. `Subscription.next()` returns `None` once the stream has ended.
  `Rpc` wraps a client with typed methods such as `storage`,
  `storage_keys_paged`, `query_storage_at`, `block_hash`, `block`,
  `runtime_version`, `submit_extrinsic` and `watch_extrinsic`. JSON values
  are parsed into `NumberOrHex`, `RuntimeVersion`, `ReadProof`,
  `StorageChangeSet` and `SubstrateTransactionStatus`.
- `subclient.storage`: keys (`StorageKeyPrefix`, `StorageEntryKey`,
  `StorageMapKey`), the `StorageEntry` base class, and `StorageClient`.
  `StorageClient` provides `fetch`, `fetch_or_default` (which falls back to the
  metadata's default), `fetch_raw`, `fetch_keys`, and `iter`, which returns a
  `KeyIter` that pages through a storage map.
- `subclient.transaction`: `TransactionProgress`, `TransactionStatus`,
  `TransactionInBlock`, `TransactionEvents`, `EventRecord`,
  `TransactionError` and `RuntimeError`.
- `subclient.node`: starting a local development node and saving its
  metadata.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Querying a node

```python
import asyncio

from subclient.rpc import Rpc, ws_client


async def show_chain():
    client = await ws_client("ws://127.0.0.1:9944")
    rpc = Rpc(client)
    try:
        print(await rpc.system_chain())
        print(await rpc.system_name())
        print((await rpc.block_hash(None)).hex())
        print((await rpc.finalized_head()).hex())
    finally:
        await client.close()


asyncio.run(show_chain())
```

Hashes, keys and storage values are returned as `bytes`. Errors reported by
the node, and transport failures, are raised as `RpcError`. A reply of an
unexpected shape raises `BasicError`.

## Following a transaction

`Rpc.watch_extrinsic` submits an encoded extrinsic and returns a
subscription of `SubstrateTransactionStatus` values. Wrap that subscription in
a `TransactionProgress`, together with the extrinsic's hash, the `Rpc`, and an
async function that returns a block's `EventRecord`s.

- `next_item()`, or `async for`, yields each `TransactionStatus`.
- `wait_for_in_block()` returns a `TransactionInBlock` once the transaction is
  in a block.
- `wait_for_finalized()` returns one once that block is finalized.
- `wait_for_finalized_success(error_decoder)` also fetches the events. It
  raises `RuntimeError` if a `System.ExtrinsicFailed` event belongs to the
  transaction.

Statuses such as `invalid`, `usurped` and `dropped` are not treated as final.
A `finalityTimeout` status raises `TransactionError`. If the stream ends
without a result, `RpcError` is raised.

`TransactionEvents.iter()`, `find()`, `find_first_event()` and `has()` only
look at events emitted while the transaction was applied.

## Saving a node's metadata

```
subclient-metadata --help
```

`subclient-metadata` works in these steps:

1. It starts a development node (`--dev --tmp`) on the first free port it
   finds in the range 9900–9999.
2. It retries `state_getMetadata` up to 20 times, a second apart, until the
   node answers.
3. It stops the node and writes the bytes to `metadata.scale` in `--out-dir`,
   or in `$OUT_DIR` if that option is not given.
4. It prints the path of the file.

The node binary is given by `--binary`. Without it, the command uses
`$SUBSTRATE_NODE_PATH`, or `substrate` on the `PATH`.

## What it does not do

- It does not decode the SCALE-encoded metadata blob into a `Metadata`. The
  `RuntimeMetadataPrefixed` must be built by the caller.
- It does not sign or construct extrinsics.
- It does not decode a block's event records from storage. `TransactionProgress`
  and `TransactionInBlock` are given a function that supplies them.
- It does not generate typed APIs for a runtime's pallets.