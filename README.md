# ckptrelay

`ckptrelay` takes sealed epoch checkpoints from a query client and writes them
to Bitcoin as two chained transactions. Each transaction carries one half of
the encoded checkpoint in an `OP_RETURN` output, and the second transaction
spends the change output of the first. If the second transaction has not been
replaced or confirmed after a configurable interval, its fee is raised and it
is sent again under the replace-by-fee rules.

The package uses only the standard library.

## Installation

```
pip install ckptrelay
```

## Modules

- `ckptrelay.wire`: `MsgTx`, `TxIn`, `TxOut` and `OutPoint`; serialization
  with and without witness data (`MsgTx.serialize`, `deserialize_tx`),
  transaction hashes (`MsgTx.tx_hash`, `MsgTx.txid`), `double_sha256`,
  `build_op_return_script` and `calculate_tx_virtual_size`.
- `ckptrelay.address`: `decode_address` for base58 (P2PKH, P2SH) and bech32 /
  bech32m (P2WPKH, P2WSH, P2TR) addresses, `NetParams` with `MAINNET`,
  `TESTNET`, `REGTEST`, `SIGNET` and `SIMNET`, `pay_to_addr_script`,
  `extract_pkscript_addresses`, and `select_change_address`, which returns the
  last SegWit bech32 (P2WPKH or P2WSH) address if there is one and otherwise a
  random one of the others.
- `ckptrelay.store`: `SubmitterStore`, a SQLite-backed store that keeps the
  last submitted checkpoint (`StoredCheckpoint`), so that after a restart the
  same checkpoint is not built and sent a second time. Given a directory it
  writes `submitter.db` inside it; `":memory:"` is also accepted. It can be
  used as a context manager.
- `ckptrelay.poller`: `Poller`, which asks the query client for checkpoints
  with status `CheckpointStatus.SEALED` and queues the one with the lowest
  epoch; `get_sealed_checkpoint(timeout)` takes it off the queue.
- `ckptrelay.estimator`: `BtcConfig`, `BitcoindFeeEstimator` (uses bitcoind's
  `estimatesmartfee` and `getnetworkinfo` over JSON-RPC), `new_fee_estimator`,
  `rpc_host_url`, and the conversions `fee_per_kvbyte` / `fee_per_kweight`.
- `ckptrelay.rbf`: `verify_rbf_requirements`, `calc_min_relay_fee`,
  `maybe_resend_from_store`, `RPCError` / `RPCErrorCode`, `MempoolEntry`, and
  the error classes derived from `RelayerError`.
- `ckptrelay.relayer`: `Relayer`, which builds, funds, signs, sends and
  fee-bumps the checkpoint transactions, plus `SubmitterConfig`,
  `RelayerMetrics`, `BtcTxInfo` and `CheckpointInfo`.
- `ckptrelay.submitter`: `Submitter`, which runs polling and processing on two
  background threads, `SubmitterMetrics` and `decode_checkpoint_tag`.

## What you supply

The package does not include a wallet client, a query client or a checkpoint
encoder; `Submitter` and `Relayer` take them as objects:

- **query client**: `btc_checkpoint_params()` returning an object with a hex
  `checkpoint_tag`, and `raw_checkpoint_list(status, pagination)` returning a
  list of `RawCheckpointWithMeta`.
- **encoder**: for `Submitter`, a callable `encoder(tag, raw_checkpoint)`
  returning the two data halves as `bytes`; `Submitter` binds the decoded
  checkpoint tag and hands `Relayer` a one-argument callable.
- **wallet**: `get_btc_config()` (a `BtcConfig`), `get_net_params()`,
  `list_unspent()` (items with `.address`), `get_raw_transaction(hash)`,
  `send_raw_transaction(tx, allow_high_fees)`,
  `fund_raw_transaction(tx, fee_rate=..., change_position=...)` returning
  `(tx, fee)`, `get_new_address(label)`, `wallet_passphrase(passphrase, seconds)`,
  `get_wallet_pass()`, `get_wallet_lock_time()`,
  `sign_raw_transaction_with_wallet(tx)` returning `(tx, all_signed)`,
  `get_mempool_entry(txid)` returning a `MempoolEntry`, `get_network_info()`
  (with `.incremental_fee`), and `tx_details(txid, pk_script)` returning
  `(details, status)` where status may be `ckptrelay.relayer.TX_IN_CHAIN`.
  Node errors that the relayer reacts to should be raised as `RPCError`.
- **estimator**: any object with `estimate_fee_per_kw(target)` and
  `relay_fee_per_kw()`; pass `None` to `Submitter` to have it create one with
  `new_fee_estimator(wallet.get_btc_config())`.

## Usage

```python
from ckptrelay.relayer import SubmitterConfig
from ckptrelay.store import SubmitterStore
from ckptrelay.submitter import Submitter

with SubmitterStore("/var/lib/ckptrelay") as store:
    submitter = Submitter(
        config=SubmitterConfig(polling_interval_seconds=60),
        wallet=wallet,
        query_client=query_client,
        encoder=encoder,
        estimator=None,
        store=store,
        retry_sleep=1.0,
        max_retry_sleep=60.0,
        max_retry_times=5,
    )
    submitter.start()
    ...
    submitter.stop()
    submitter.wait_for_shutdown()
```

Fetching the checkpoint parameters is retried up to `max_retry_times` times,
with a delay that doubles from `retry_sleep` up to `max_retry_sleep`.
`start` may be called again after `stop` to restart the workers, and
`shutting_down()` tells whether a stop has been requested. Failed submissions
are logged and counted in `submitter.metrics.failed_checkpoints`; the relayer's
counters are in `submitter.metrics.relayer`.

## What it does not do

- There is no command-line program; the package is used as a library.
- Metrics are plain counters on dataclasses; nothing exports them.
- Apart from `BitcoindFeeEstimator`, it does not talk to a node itself: the
  wallet and the query client are yours to provide.

## Tests

```
pip install ckptrelay[test]
pytest
```