"""Replace-by-fee policy checks and recovery of checkpoint txs from the store."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from ckptrelay.estimator import fee_per_kvbyte
from ckptrelay.store import StoredCheckpoint
from ckptrelay.wire import MsgTx

MAX_SATOSHI = 21_000_000 * 100_000_000
MAX_DESCENDANTS = 100


class RPCErrorCode(enum.IntEnum):
    """JSON-RPC error codes reported by bitcoind that the relayer reacts to."""

    NO_TX_INFO = -5
    DECODE_HEX_STRING = -22
    TX_ERROR = -25
    TX_REJECTED = -26
    TX_ALREADY_IN_CHAIN = -27
    RAW_TX_STRING = -32602


class RPCError(Exception):
    """An error returned by the node's JSON-RPC interface."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(code, message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{int(self.code)}: {self.message}"


@dataclass
class MempoolEntry:
    """Mempool data for a transaction; descendant fees and sizes in sat and vB."""

    fee: float = 0.0
    descendant_count: int = 0
    descendant_size: int = 0
    descendant_fees: float = 0.0


class RelayerError(Exception):
    """Base class for relayer failures."""

    default_message = "relayer error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message if message is not None else self.default_message)


class TooManyDescendantsError(RelayerError):
    default_message = "too many descendant transactions"


class InsufficientFeeError(RelayerError):
    default_message = "insufficient fee"


class InsufficientFeerateError(RelayerError):
    default_message = "feerate insufficient"


class FeeIncrementTooSmallError(RelayerError):
    default_message = "fee increment too small"


class TxNotInMempoolError(RelayerError):
    default_message = "transaction not found in mempool"


class RelayFeerateError(RelayerError):
    default_message = "failed to get relay feerate"


def _fmt_amount(sat: int) -> str:
    btc = (Decimal(int(sat)) / Decimal(100_000_000)).normalize()
    return f"{format(btc, 'f')} BTC"


def _fmt_float(value: float) -> str:
    if math.isfinite(value) and value.is_integer():
        return str(int(value))
    return repr(value)


def _divide(numerator: float, denominator: float) -> float:
    if denominator == 0:
        if numerator == 0:
            return math.nan
        return math.copysign(math.inf, numerator)
    return numerator / denominator


def verify_rbf_requirements(
    mempool_entry: MempoolEntry,
    new_fee: int,
    tx_virtual_size: int,
    get_incremental_feerate: Callable[[], float],
) -> None:
    """Raise if a replacement paying new_fee would break the node's RBF rules."""
    if mempool_entry.descendant_count > MAX_DESCENDANTS:
        raise TooManyDescendantsError(
            f"{TooManyDescendantsError.default_message} "
            f"({mempool_entry.descendant_count} > {MAX_DESCENDANTS})"
        )

    original_total_fees = int(mempool_entry.descendant_fees)
    original_total_vsize = int(mempool_entry.descendant_size)

    if new_fee <= original_total_fees:
        raise InsufficientFeeError(
            f"{InsufficientFeeError.default_message}: {_fmt_amount(new_fee)} ≤ "
            f"{_fmt_amount(original_total_fees)} (original+descendants)"
        )

    original_feerate = _divide(float(original_total_fees), float(original_total_vsize))
    new_feerate = _divide(float(new_fee), float(tx_virtual_size))
    if new_feerate <= original_feerate:
        raise InsufficientFeerateError(
            f"{InsufficientFeerateError.default_message}: {_fmt_float(new_feerate)} ≤ "
            f"{_fmt_float(original_feerate)} (sat/vB)"
        )

    try:
        incremental_feerate = int(get_incremental_feerate())
    except Exception as exc:
        raise RelayFeerateError(f"{RelayFeerateError.default_message}: {exc}") from exc

    required_increment = incremental_feerate * tx_virtual_size
    increment = new_fee - original_total_fees
    if increment < required_increment:
        raise FeeIncrementTooSmallError(
            f"{FeeIncrementTooSmallError.default_message}: {_fmt_amount(increment)} < "
            f"{_fmt_amount(required_increment)}"
        )


def calc_min_relay_fee(relay_fee_per_kw: int, tx_virtual_size: int) -> int:
    """Minimum fee (sat) for a tx of the given vsize to be relayed."""
    rate_per_kvbyte = fee_per_kvbyte(relay_fee_per_kw)
    fee = rate_per_kvbyte * tx_virtual_size // 1000
    return min(fee, MAX_SATOSHI)


def _maybe_resend(
    tx: MsgTx,
    get_raw_transaction: Callable[[bytes], object],
    send_transaction: Callable[[MsgTx], object],
) -> None:
    try:
        get_raw_transaction(tx.tx_hash())
    except RPCError as err:
        if err.code != RPCErrorCode.NO_TX_INFO:
            raise
    else:
        return

    try:
        send_transaction(tx)
    except RPCError as send_err:
        code = send_err.code
        if code == RPCErrorCode.TX_ALREADY_IN_CHAIN:
            return
        if code in (RPCErrorCode.RAW_TX_STRING, RPCErrorCode.DECODE_HEX_STRING):
            raise RelayerError(
                f"fatal error: invalid transaction format: {send_err}"
            ) from send_err
        if code == RPCErrorCode.TX_ERROR:
            raise RelayerError(f"transaction error: {send_err}") from send_err
        if code == RPCErrorCode.TX_REJECTED:
            raise RelayerError(f"transaction rejected: {send_err}") from send_err
        raise


def maybe_resend_from_store(
    epoch: int,
    get_latest_checkpoint: Callable[[], Optional[StoredCheckpoint]],
    get_raw_transaction: Callable[[bytes], object],
    send_transaction: Callable[[MsgTx], object],
) -> bool:
    """Resend stored txs of this epoch missing from the node.

    Returns True when the stored checkpoint belongs to epoch and both of its
    transactions are known to the node (or were re-sent), False otherwise.
    """
    stored = get_latest_checkpoint()
    if stored is None or stored.epoch != epoch:
        return False
    _maybe_resend(stored.tx1, get_raw_transaction, send_transaction)
    _maybe_resend(stored.tx2, get_raw_transaction, send_transaction)
    return True