"""Relaying of sealed checkpoints to Bitcoin as two chained OP_RETURN transactions."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ckptrelay.address import (
    Address,
    extract_pkscript_addresses,
    pay_to_addr_script,
    select_change_address,
)
from ckptrelay.estimator import fee_per_kvbyte
from ckptrelay.poller import CheckpointStatus, RawCheckpoint, RawCheckpointWithMeta
from ckptrelay.rbf import (
    MAX_SATOSHI,
    FeeIncrementTooSmallError,
    InsufficientFeeError,
    InsufficientFeerateError,
    MempoolEntry,
    RelayerError,
    TooManyDescendantsError,
    TxNotInMempoolError,
    calc_min_relay_fee,
    maybe_resend_from_store,
    verify_rbf_requirements,
)
from ckptrelay.store import StoredCheckpoint, SubmitterStore
from ckptrelay.wire import (
    MsgTx,
    OutPoint,
    TxIn,
    TxOut,
    build_op_return_script,
    calculate_tx_virtual_size,
)

log = logging.getLogger(__name__)

CHANGE_POSITION = 1
DUST_THRESHOLD = 546
RBF_SEQUENCE = 0xFFFFFFFF - 2
SATS_PER_BTC = 100_000_000

TX_IN_CHAIN = "in_chain"
TX_IN_MEMPOOL = "in_mempool"
TX_NOT_FOUND = "not_found"

_RESUBMIT_ATTEMPTS = 5
_RESUBMIT_DELAY = 0.2


def _mul_amount(amount: int, factor: float) -> int:
    value = amount * factor
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _is_error(err: Optional[BaseException], cls: type) -> bool:
    while err is not None:
        if isinstance(err, cls):
            return True
        err = err.__cause__
    return False


def _hash_str(txid: bytes) -> str:
    return bytes(txid)[::-1].hex()


@dataclass
class BtcTxInfo:
    """A transaction sent for a checkpoint, with its id, vsize and fee (sat)."""

    tx: Optional[MsgTx] = None
    txid: Optional[bytes] = None
    size: int = 0
    fee: int = 0


@dataclass
class CheckpointInfo:
    """The last checkpoint submitted: epoch, time of submission and its two txs."""

    epoch: int = 0
    ts: float = 0.0
    tx1: Optional[BtcTxInfo] = None
    tx2: Optional[BtcTxInfo] = None


@dataclass
class SubmitterConfig:
    buffer_size: int = 100
    polling_interval_seconds: float = 60
    resend_interval_seconds: int = 1800
    resubmit_fee_multiplier: float = 1.0
    insufficient_fee_margin: float = 0.15
    fee_increment_margin: float = 0.15
    insufficient_feerate_margin: float = 0.15


@dataclass
class RelayerMetrics:
    invalid_checkpoints: int = 0
    failed_resent_checkpoints: int = 0
    resent_checkpoints: int = 0
    resend_interval_seconds: float = 0
    submitted_segments: list = field(default_factory=list)

    def record_segment(self, epoch: int, index: int, txid: str, fee: int) -> None:
        self.submitted_segments.append((str(epoch), str(index), txid, str(fee), time.time()))


class Relayer:
    """Builds, sends and fee-bumps the two transactions of each checkpoint."""

    def __init__(self, wallet, wallet_name: str,
                 encoder: Callable[[RawCheckpoint], tuple[bytes, bytes]],
                 estimator, config: SubmitterConfig, store: SubmitterStore,
                 metrics: Optional[RelayerMetrics] = None) -> None:
        self._wallet = wallet
        self.wallet_name = wallet_name
        self._encoder = encoder
        self._estimator = estimator
        self.config = config
        self._store = store
        self.metrics = metrics if metrics is not None else RelayerMetrics()
        self.metrics.resend_interval_seconds = float(config.resend_interval_seconds)
        self.last_submitted_checkpoint = CheckpointInfo()

    # -- checkpoint submission -------------------------------------------------

    def send_checkpoint_to_btc(self, ckpt: RawCheckpointWithMeta) -> None:
        """Send the checkpoint as two txs, or only tx2 if tx1 already went out."""
        epoch = ckpt.ckpt.epoch_num
        if ckpt.status != CheckpointStatus.SEALED:
            log.error("The checkpoint for epoch %s is not sealed", epoch)
            self.metrics.invalid_checkpoints += 1
            return

        if self._should_send_complete(epoch) or self._should_send_tx2(epoch):
            processed = maybe_resend_from_store(
                epoch, self._store.latest_checkpoint,
                self._wallet.get_raw_transaction, self._send_tx,
            )
            if processed:
                return

        if self._should_send_complete(epoch):
            log.info("Submitting a raw checkpoint for epoch %s", epoch)
            submitted = self._convert_and_submit(ckpt.ckpt)
        elif self._should_send_tx2(epoch):
            log.info("Retrying to send tx2 for epoch %s", epoch)
            submitted = self._retry_send_tx2(ckpt.ckpt)
        else:
            return
        self.last_submitted_checkpoint = submitted
        self._store.put_checkpoint(
            StoredCheckpoint(submitted.tx1.tx, submitted.tx2.tx, submitted.epoch))

    def maybe_resubmit_second_checkpoint_tx(self, ckpt: RawCheckpointWithMeta) -> None:
        """Resend tx2 with a bumped fee once the resend interval has passed."""
        epoch = ckpt.ckpt.epoch_num
        if ckpt.status != CheckpointStatus.SEALED:
            log.error("The checkpoint for epoch %s is not sealed", epoch)
            self.metrics.invalid_checkpoints += 1
            return
        last = self.last_submitted_checkpoint
        if epoch < last.epoch:
            log.error("The checkpoint for epoch %s is lower than the last submission for epoch %s",
                      epoch, last.epoch)
            self.metrics.invalid_checkpoints += 1
            return
        if last.tx2 is None:
            return
        if int(time.time() - last.ts) < self.config.resend_interval_seconds:
            return

        last_error: Optional[BaseException] = None

        def attempt() -> Optional[BtcTxInfo]:
            nonlocal last_error
            bumped = self.calculate_bumped_fee(last, last_error)
            if not self._should_resend(last, bumped):
                return None
            try:
                return self.maybe_resend_second_tx(last.tx2, bumped)
            except Exception as exc:
                last_error = exc
                if _is_error(exc, TooManyDescendantsError):
                    log.warning("Transaction has too many descendants, won't attempt RBF again: %s", exc)
                    return None
                raise

        failure: Optional[BaseException] = None
        for n in range(_RESUBMIT_ATTEMPTS):
            try:
                resubmitted = attempt()
                failure = None
                break
            except Exception as exc:
                failure = exc
                if n < _RESUBMIT_ATTEMPTS - 1:
                    log.warning("Retry %d after error: %s", n + 1, exc)
                    time.sleep(_RESUBMIT_DELAY)
        if failure is not None:
            self.metrics.failed_resent_checkpoints += 1
            raise RelayerError(
                f"failed to re-send the second tx of the checkpoint {last.epoch}: {failure}"
            ) from failure
        if resubmitted is None:
            return

        self.metrics.record_segment(epoch, 1, _hash_str(resubmitted.txid), resubmitted.fee)
        self.metrics.resent_checkpoints += 1
        last.tx2 = resubmitted
        last.ts = time.time()
        self._store.put_checkpoint(StoredCheckpoint(last.tx1.tx, last.tx2.tx, last.epoch))

    def _should_send_complete(self, epoch: int) -> bool:
        last = self.last_submitted_checkpoint
        return last.tx1 is None or last.epoch < epoch

    def _should_send_tx2(self, epoch: int) -> bool:
        last = self.last_submitted_checkpoint
        return (last.tx1 is not None or last.epoch < epoch) and last.tx2 is None

    def _should_resend(self, info: CheckpointInfo, bumped_fee: int) -> bool:
        required = info.tx2.fee + self._min_relay_fee(info.tx2.size)
        log.debug("the bumped fee: %s sat, the required fee: %s sat", bumped_fee, required)
        return bumped_fee >= required

    def _convert_and_submit(self, ckpt: RawCheckpoint) -> CheckpointInfo:
        data1, data2 = self._encoder(ckpt)
        tx1, tx2 = self.chain_two_tx_and_send(data1, data2)
        self._record(tx1, tx2, ckpt.epoch_num)
        return CheckpointInfo(ckpt.epoch_num, time.time(), tx1, tx2)

    def _retry_send_tx2(self, ckpt: RawCheckpoint) -> CheckpointInfo:
        _, data2 = self._encoder(ckpt)
        tx1 = self.last_submitted_checkpoint.tx1
        if tx1 is None:
            raise RelayerError("tx1 is nil")
        tx2 = self._build_and_send(lambda: self.build_chained_data_tx(data2, tx1.tx))
        self._record(tx1, tx2, ckpt.epoch_num)
        return CheckpointInfo(ckpt.epoch_num, time.time(), tx1, tx2)

    def _record(self, tx1: BtcTxInfo, tx2: BtcTxInfo, epoch: int) -> None:
        log.info("Sent two txs to BTC for checkpointing epoch %s, first txid: %s, second txid: %s",
                 epoch, tx1.tx.txid(), tx2.tx.txid())
        self.metrics.record_segment(epoch, 0, tx1.tx.txid(), tx1.fee)
        self.metrics.record_segment(epoch, 1, tx2.tx.txid(), tx2.fee)

    def _build_and_send(self, builder: Callable[[], BtcTxInfo]) -> BtcTxInfo:
        try:
            info = builder()
        except Exception as exc:
            raise RelayerError(f"failed to add data to tx: {exc}") from exc
        try:
            info.txid = self._send_tx(info.tx)
        except Exception as exc:
            raise RelayerError(f"failed to send tx to BTC: {exc}") from exc
        return info

    def chain_two_tx_and_send(self, data1: bytes, data2: bytes) -> tuple[BtcTxInfo, BtcTxInfo]:
        """Send a data tx, then a second one spending its change output."""
        tx1 = self._build_and_send(lambda: self.build_data_tx(data1))
        self.last_submitted_checkpoint.tx1 = tx1
        tx2 = self._build_and_send(lambda: self.build_chained_data_tx(data2, tx1.tx))
        return tx1, tx2

    def get_change_address(self) -> Address:
        """Pick a change address among wallet outputs, preferring SegWit Bech32."""
        unspent = self._wallet.list_unspent()
        return select_change_address((u.address for u in unspent), self._wallet.get_net_params())

    # -- fees -------------------------------------------------------------------

    def calculate_bumped_fee(self, ckpt_info: CheckpointInfo,
                             previous_failure: Optional[BaseException]) -> int:
        """Fee for a replacement of tx2, adjusted to the reason of the last failure."""
        fee_per_byte = self.get_fee_rate() // 1000
        required = fee_per_byte * ckpt_info.tx2.size
        bumped = _mul_amount(ckpt_info.tx2.fee, self.config.resubmit_fee_multiplier)

        rbf_errors = (InsufficientFeeError, InsufficientFeerateError, FeeIncrementTooSmallError)
        if previous_failure is None or not any(_is_error(previous_failure, c) for c in rbf_errors):
            return max(bumped, required)

        txid = _hash_str(ckpt_info.tx2.txid)
        try:
            entry = self._wallet.get_mempool_entry(txid)
        except Exception as exc:
            raise RelayerError(f"failed to get mempool entry for {txid}: {exc}") from exc

        if _is_error(previous_failure, InsufficientFeeError):
            bumped = self._adjust_insufficient_fee(entry, bumped)
        elif _is_error(previous_failure, InsufficientFeerateError):
            bumped = self._adjust_insufficient_feerate(entry, bumped, required, ckpt_info.tx2.size)
        else:
            bumped = self._adjust_increment_too_small(entry, bumped, required, ckpt_info)
        return max(bumped, required)

    def _adjust_insufficient_fee(self, entry: MempoolEntry, bumped: int) -> int:
        new_fee = _mul_amount(int(entry.descendant_fees), 1.0 + self.config.insufficient_fee_margin)
        return max(new_fee, bumped)

    def _adjust_insufficient_feerate(self, entry: MempoolEntry, bumped: int,
                                     required: int, size: int) -> int:
        fees, vsize = float(int(entry.descendant_fees)), float(int(entry.descendant_size))
        original = fees / vsize if vsize else (math.inf if fees else math.nan)
        new_rate = original * (1.0 + self.config.insufficient_feerate_margin)
        new_fee = new_rate * size
        if not math.isnan(new_fee) and new_fee > bumped:
            return required
        return bumped

    def _adjust_increment_too_small(self, entry: MempoolEntry, bumped: int,
                                    required: int, info: CheckpointInfo) -> int:
        try:
            incremental = self._incremental_relay_feerate()
        except Exception:
            return bumped
        increment = incremental * info.tx2.size
        original = int(entry.fee) if int(entry.fee) != 0 else info.tx2.fee
        new_fee = original + _mul_amount(increment, 1.0 + self.config.fee_increment_margin)
        return required if new_fee > bumped else bumped

    def _incremental_relay_feerate(self) -> int:
        try:
            info = self._wallet.get_network_info()
        except Exception as exc:
            raise RelayerError(
                f"failed to get network info for incremental relay feerate: {exc}") from exc
        return int(info.incremental_fee)

    def _min_relay_fee(self, vsize: int) -> int:
        return min(calc_min_relay_fee(self._estimator.relay_fee_per_kw(), vsize), MAX_SATOSHI)

    def get_fee_rate(self) -> int:
        """Estimated fee rate in sat/kvB, clamped to the configured bounds."""
        cfg = self._wallet.get_btc_config()
        target = cfg.target_block_num
        if target < 0 or target > 0xFFFFFFFF:
            raise ValueError(f"targetBlockNum ({target}) is out of uint32 range")
        try:
            fee = self._estimator.estimate_fee_per_kw(target)
        except Exception as exc:
            log.error("failed to estimate transaction fee. Using default fee %s: %s",
                      cfg.default_fee, exc)
            return cfg.default_fee
        rate = fee_per_kvbyte(fee)
        rate = min(rate, cfg.tx_fee_max)
        return max(rate, cfg.tx_fee_min)

    # -- transactions -------------------------------------------------------------

    def maybe_resend_second_tx(self, tx2: BtcTxInfo, bumped_fee: int) -> Optional[BtcTxInfo]:
        """Replace tx2 by one paying bumped_fee; None if tx2 is already confirmed."""
        change = tx2.tx.tx_out[CHANGE_POSITION]
        _, status = self._wallet.tx_details(tx2.txid, change.pk_script)
        if status == TX_IN_CHAIN:
            return None

        balance = change.value
        original_txid = tx2.tx.txid()
        if balance - bumped_fee < DUST_THRESHOLD:
            fee_rate = (bumped_fee / SATS_PER_BTC) / (tx2.size / 1000.0)
            rounded = _mul_amount(1, fee_rate * 1e6) / 1e6
            try:
                funded, fee = self._wallet.fund_raw_transaction(
                    tx2.tx, fee_rate=rounded, change_position=CHANGE_POSITION)
            except Exception as exc:
                raise RelayerError(f"failed to fund transaction: {exc}") from exc
            tx2.tx = funded
            bumped_fee = fee
            tx2.size = calculate_tx_virtual_size(funded)
        else:
            change.value = balance - bumped_fee

        try:
            self._verify_rbf(original_txid, bumped_fee, tx2.size)
        except RelayerError as exc:
            raise RelayerError(f"RBF requirements not met: {exc}") from exc

        signed = self._sign_tx(tx2.tx)
        txid = self._send_tx(signed)
        tx2.fee = bumped_fee
        tx2.txid = txid
        return tx2

    def _verify_rbf(self, txid: str, new_fee: int, vsize: int) -> None:
        try:
            entry = self._wallet.get_mempool_entry(txid)
        except Exception as exc:
            raise TxNotInMempoolError(
                f"{TxNotInMempoolError.default_message}: {txid}: {exc}") from exc
        verify_rbf_requirements(entry, new_fee, vsize, self._incremental_relay_feerate)

    def _sign_tx(self, tx: MsgTx) -> MsgTx:
        self._wallet.wallet_passphrase(self._wallet.get_wallet_pass(),
                                       self._wallet.get_wallet_lock_time())
        signed, all_signed = self._wallet.sign_raw_transaction_with_wallet(tx)
        if not all_signed:
            raise RelayerError("transaction is only partially signed")
        return signed

    def _send_tx(self, tx: MsgTx) -> bytes:
        log.debug("Sending tx %s to BTC", tx.txid())
        return self._wallet.send_raw_transaction(tx, True)

    def _fund(self, tx: MsgTx, fee_rate: float, context: str) -> MsgTx:
        try:
            funded, _ = self._wallet.fund_raw_transaction(
                tx, fee_rate=fee_rate, change_position=CHANGE_POSITION)
        except Exception as exc:
            raise RelayerError(f"failed to fund raw tx {context}: {exc}") from exc
        return funded

    def build_data_tx(self, data: bytes) -> BtcTxInfo:
        """Build, fund and sign a tx carrying data in an OP_RETURN output."""
        tx = MsgTx()
        tx.add_tx_out(TxOut(0, build_op_return_script(data)))
        fee_rate = self.get_fee_rate() / SATS_PER_BTC
        funded = self._fund(tx, fee_rate, "in buildDataTx")

        if len(funded.tx_out) <= CHANGE_POSITION:
            try:
                change_addr = self._wallet.get_new_address("")
            except Exception as exc:
                raise RelayerError(f"err getting raw change address {exc}") from exc
            funded.add_tx_out(TxOut(DUST_THRESHOLD, pay_to_addr_script(change_addr)))
            funded = self._fund(funded, fee_rate, "after nochange")

        return self.finalize_transaction(funded)

    def build_chained_data_tx(self, data: bytes, prev_tx: MsgTx) -> BtcTxInfo:
        """Build a data tx spending the change output of prev_tx, with RBF enabled."""
        tx = MsgTx()
        tx.add_tx_in(TxIn(OutPoint(prev_tx.tx_hash(), CHANGE_POSITION), sequence=RBF_SEQUENCE))
        tx.add_tx_out(TxOut(0, build_op_return_script(data)))
        fee_rate = self.get_fee_rate() / SATS_PER_BTC
        funded = self._fund(tx, fee_rate, "in buildChainedDataTx")
        return self.finalize_transaction(funded)

    def finalize_transaction(self, tx: MsgTx) -> BtcTxInfo:
        """Check the change output, sign the tx and work out its size and fee."""
        if len(tx.tx_out) > CHANGE_POSITION:
            addresses = extract_pkscript_addresses(
                tx.tx_out[CHANGE_POSITION].pk_script, self._wallet.get_net_params())
            if not addresses:
                raise RelayerError("no change address found")
        try:
            signed = self._sign_tx(tx)
        except Exception as exc:
            raise RelayerError(f"failed to sign tx: {exc}") from exc
        size = calculate_tx_virtual_size(tx)
        return BtcTxInfo(tx=signed, size=size, fee=self._min_relay_fee(size))