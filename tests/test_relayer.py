from types import SimpleNamespace

import pytest

from ckptrelay.address import MAINNET, REGTEST, Address, AddressKind, pay_to_addr_script
from ckptrelay.estimator import BtcConfig
from ckptrelay.poller import CheckpointStatus, RawCheckpoint, RawCheckpointWithMeta
from ckptrelay.rbf import (
    FeeIncrementTooSmallError,
    InsufficientFeeError,
    InsufficientFeerateError,
    MempoolEntry,
    RelayerError,
    TxNotInMempoolError,
)
from ckptrelay.relayer import (
    TX_IN_CHAIN,
    TX_IN_MEMPOOL,
    BtcTxInfo,
    CheckpointInfo,
    Relayer,
    RelayerMetrics,
    SubmitterConfig,
)
from ckptrelay.store import StoredCheckpoint, SubmitterStore
from ckptrelay.wire import MsgTx, OutPoint, TxIn, TxOut, build_op_return_script

HASH1 = bytes.fromhex("00" * 31 + "01")[::-1]
HASH2 = bytes.fromhex("00" * 31 + "02")[::-1]
SEND_HASH = bytes.fromhex("00" * 30 + "abcd")[::-1]
CHANGE_ADDR = Address(AddressKind.P2WPKH, b"\x11" * 20, REGTEST)


class FakeEstimator:
    def __init__(self, fee_kw=5000, error=None):
        self.fee_kw = fee_kw
        self.error = error

    def estimate_fee_per_kw(self, target):
        if self.error:
            raise self.error
        return self.fee_kw

    def relay_fee_per_kw(self):
        return 1000


class FakeWallet:
    def __init__(self):
        self.btc_config = BtcConfig(target_block_num=6, default_fee=5000,
                                    tx_fee_min=1000, tx_fee_max=100000)
        self.params = REGTEST
        self.mempool_entry = MempoolEntry()
        self.mempool_error = None
        self.incremental_fee = 2
        self.fund_results = []
        self.fund_calls = []
        self.new_address = CHANGE_ADDR
        self.new_address_error = None
        self.unlock_error = None
        self.sign_error = None
        self.all_signed = True
        self.send_error = None
        self.sent = []
        self.status = TX_IN_MEMPOOL
        self.details_error = None
        self.unspent = []
        self.raw_tx_known = True

    def get_btc_config(self):
        return self.btc_config

    def get_net_params(self):
        return self.params

    def list_unspent(self):
        return self.unspent

    def get_mempool_entry(self, txid):
        if self.mempool_error:
            raise self.mempool_error
        return self.mempool_entry

    def get_network_info(self):
        return SimpleNamespace(incremental_fee=self.incremental_fee)

    def fund_raw_transaction(self, tx, fee_rate, change_position):
        self.fund_calls.append(tx.copy())
        result = self.fund_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result(tx)

    def get_new_address(self, label):
        if self.new_address_error:
            raise self.new_address_error
        return self.new_address

    def get_wallet_pass(self):
        return "password"

    def get_wallet_lock_time(self):
        return 300

    def wallet_passphrase(self, passphrase, lock_time):
        if self.unlock_error:
            raise self.unlock_error

    def sign_raw_transaction_with_wallet(self, tx):
        if self.sign_error:
            raise self.sign_error
        return tx.copy(), self.all_signed

    def send_raw_transaction(self, tx, allow_high_fees):
        if self.send_error:
            raise self.send_error
        self.sent.append(tx)
        return SEND_HASH

    def get_raw_transaction(self, txid):
        return object()

    def tx_details(self, txid, pk_script):
        if self.details_error:
            raise self.details_error
        return None, self.status


def make_relayer(wallet, estimator=None, config=None, store=None, encoder=None):
    return Relayer(wallet, "default", encoder or (lambda c: (b"first", b"second")),
                   estimator or FakeEstimator(), config or SubmitterConfig(),
                   store, RelayerMetrics())


def with_change(value=10000, fee=1000):
    def fund(tx):
        funded = tx.copy()
        if not funded.tx_in:
            funded.add_tx_in(TxIn(OutPoint(HASH1, 0)))
        funded.add_tx_out(TxOut(value, pay_to_addr_script(CHANGE_ADDR)))
        return funded, fee
    return fund


def data_tx(has_change=True, change_value=10000):
    tx = MsgTx()
    tx.add_tx_in(TxIn(OutPoint(HASH1, 0)))
    tx.add_tx_out(TxOut(0, build_op_return_script(b"test data")))
    if has_change:
        tx.add_tx_out(TxOut(change_value, pay_to_addr_script(CHANGE_ADDR)))
    return tx


def ckpt_info():
    return CheckpointInfo(epoch=123, ts=0.0,
                          tx2=BtcTxInfo(tx=MsgTx(), size=250, fee=1000,
                                        txid=bytes([1, 2, 3]) + bytes(29)))


# calculate_bumped_fee

@pytest.mark.parametrize("multiplier,fee_kvb,expected", [(1.5, 10000, 2500), (1.2, 5000, 1250)])
def test_bumped_fee_without_rbf_error(multiplier, fee_kvb, expected):
    rl = make_relayer(FakeWallet(), FakeEstimator(fee_kvb // 4),
                      SubmitterConfig(resubmit_fee_multiplier=multiplier))
    failure = None if multiplier == 1.5 else Exception("other")
    assert rl.calculate_bumped_fee(ckpt_info(), failure) == expected


def test_bumped_fee_insufficient_fee():
    wallet = FakeWallet()
    wallet.mempool_entry = MempoolEntry(descendant_fees=2000)
    rl = make_relayer(wallet, FakeEstimator(5000 // 4),
                      SubmitterConfig(resubmit_fee_multiplier=1.2, insufficient_fee_margin=0.25))
    assert rl.calculate_bumped_fee(ckpt_info(), InsufficientFeeError()) == 2500


def test_bumped_fee_insufficient_feerate():
    wallet = FakeWallet()
    wallet.mempool_entry = MempoolEntry(descendant_fees=1500, descendant_size=300, fee=0.00001)
    rl = make_relayer(wallet, FakeEstimator(8000 // 4),
                      SubmitterConfig(resubmit_fee_multiplier=1.2, insufficient_feerate_margin=0.3))
    assert rl.calculate_bumped_fee(ckpt_info(), InsufficientFeerateError()) == 2000


def test_bumped_fee_increment_too_small():
    wallet = FakeWallet()
    wallet.mempool_entry = MempoolEntry(fee=0.000012)
    wallet.incremental_fee = 1.0
    rl = make_relayer(wallet, FakeEstimator(6000 // 4),
                      SubmitterConfig(resubmit_fee_multiplier=1.2, fee_increment_margin=0.2))
    assert rl.calculate_bumped_fee(ckpt_info(), FeeIncrementTooSmallError()) == 1500


# get_fee_rate

def test_fee_rate_falls_back_to_default_on_error():
    rl = make_relayer(FakeWallet(), FakeEstimator(error=RuntimeError("down")))
    assert rl.get_fee_rate() == 5000


def test_fee_rate_clamped_to_max_and_min():
    assert make_relayer(FakeWallet(), FakeEstimator(10**9)).get_fee_rate() == 100000
    assert make_relayer(FakeWallet(), FakeEstimator(1)).get_fee_rate() == 1000


# finalize_transaction

def test_finalize_with_change():
    result = make_relayer(FakeWallet()).finalize_transaction(data_tx())
    assert len(result.tx.tx_in) == 1
    assert len(result.tx.tx_out) == 2
    assert result.tx.tx_out[1].value == 10000


def test_finalize_without_change():
    result = make_relayer(FakeWallet()).finalize_transaction(data_tx(has_change=False))
    assert result.size == 71
    assert result.fee == 284
    assert len(result.tx.tx_out) == 1


def test_finalize_no_change_address():
    tx = data_tx()
    tx.tx_out[1].pk_script = b"\x6a"
    with pytest.raises(RelayerError, match="no change address found"):
        make_relayer(FakeWallet()).finalize_transaction(tx)


@pytest.mark.parametrize("attr,value,msg", [
    ("unlock_error", RuntimeError("wallet unlock failed"), "failed to sign tx"),
    ("sign_error", RuntimeError("signing failed"), "failed to sign tx"),
    ("all_signed", False, "partially signed"),
])
def test_finalize_signing_failures(attr, value, msg):
    wallet = FakeWallet()
    setattr(wallet, attr, value)
    with pytest.raises(RelayerError, match=msg):
        make_relayer(wallet).finalize_transaction(data_tx())


# build_data_tx

def test_build_data_tx_with_change():
    wallet = FakeWallet()
    wallet.fund_results = [with_change()]
    result = make_relayer(wallet).build_data_tx(b"test data")
    assert result.tx.tx_out[0].pk_script[0] == 0x6A
    assert len(result.tx.tx_in) >= 1
    assert len(result.tx.tx_out) >= 2
    assert result.size > 0


def test_build_data_tx_adds_change_manually():
    wallet = FakeWallet()

    def no_change(tx):
        funded = tx.copy()
        funded.add_tx_in(TxIn(OutPoint(HASH1, 0)))
        return funded, 1000

    def check_second(tx):
        assert len(tx.tx_out) >= 2
        return tx.copy(), 1000

    wallet.fund_results = [no_change, check_second]
    result = make_relayer(wallet).build_data_tx(b"test data")
    assert len(wallet.fund_calls) == 2
    assert result.tx.tx_out[1].value == 546
    assert result.tx.tx_out[1].pk_script == pay_to_addr_script(CHANGE_ADDR)


def _no_change(tx):
    funded = tx.copy()
    funded.add_tx_in(TxIn(OutPoint(HASH1, 0)))
    return funded, 1000


@pytest.mark.parametrize("setup,msg", [
    (lambda w: w.fund_results.append(RuntimeError("insufficient funds")),
     "failed to fund raw tx in buildDataTx"),
    (lambda w: (w.fund_results.append(_no_change),
                setattr(w, "new_address_error", RuntimeError("wallet locked"))),
     "err getting raw change address"),
    (lambda w: w.fund_results.extend([_no_change, RuntimeError("insufficient funds")]),
     "failed to fund raw tx after nochange"),
])
def test_build_data_tx_errors(setup, msg):
    wallet = FakeWallet()
    setup(wallet)
    with pytest.raises(RelayerError, match=msg):
        make_relayer(wallet).build_data_tx(b"test data")


# build_chained_data_tx

def test_build_chained_data_tx():
    wallet = FakeWallet()
    wallet.fund_results = [with_change(8000, 2000)]
    prev = data_tx()
    result = make_relayer(wallet).build_chained_data_tx(b"test data for chained tx", prev)
    sent = wallet.fund_calls[0]
    assert len(sent.tx_in) == 1
    assert result.tx.tx_in[0].previous_out_point.index == 1
    assert result.tx.tx_in[0].previous_out_point.hash == prev.tx_hash()
    assert result.tx.tx_in[0].sequence == 0xFFFFFFFD
    assert result.tx.tx_out[0].value == 0
    assert result.tx.tx_out[1].value == 8000


def test_build_chained_data_tx_fund_fails():
    wallet = FakeWallet()
    wallet.fund_results = [RuntimeError("insufficient funds")]
    with pytest.raises(RelayerError, match="failed to fund raw tx in buildChainedDataTx"):
        make_relayer(wallet).build_chained_data_tx(b"x", data_tx())


# maybe_resend_second_tx

def tx2_info(change_value):
    tx = data_tx(change_value=change_value)
    return BtcTxInfo(tx=tx, txid=tx.tx_hash(), size=200, fee=1000)


def test_resend_already_confirmed():
    wallet = FakeWallet()
    wallet.status = TX_IN_CHAIN
    assert make_relayer(wallet).maybe_resend_second_tx(tx2_info(10000), 2000) is None
    assert wallet.sent == []


def test_resend_details_error():
    wallet = FakeWallet()
    wallet.details_error = RuntimeError("failed to get transaction details")
    with pytest.raises(RuntimeError, match="failed to get transaction details"):
        make_relayer(wallet).maybe_resend_second_tx(tx2_info(10000), 2000)


def test_resend_sufficient_balance():
    wallet = FakeWallet()
    wallet.mempool_entry = MempoolEntry(descendant_count=50, descendant_fees=1000,
                                        descendant_size=500)
    result = make_relayer(wallet).maybe_resend_second_tx(tx2_info(10000), 2000)
    assert result.fee == 2000
    assert result.txid[::-1].hex() == "00" * 30 + "abcd"
    assert result.tx.tx_out[1].value == 8000


def test_resend_insufficient_balance_funds_new_inputs():
    wallet = FakeWallet()
    wallet.mempool_entry = MempoolEntry(descendant_count=50, descendant_fees=400,
                                        descendant_size=500)

    def fund(tx):
        funded = MsgTx()
        funded.add_tx_out(TxOut(0, tx.tx_out[0].pk_script))
        funded.add_tx_in(TxIn(OutPoint(HASH2, 0)))
        funded.add_tx_in(TxIn(OutPoint(HASH1, 0)))
        funded.add_tx_out(TxOut(5000, tx.tx_out[1].pk_script))
        return funded, 1000

    wallet.fund_results = [fund]
    result = make_relayer(wallet).maybe_resend_second_tx(tx2_info(600), 1000)
    assert result.fee == 1000
    assert len(result.tx.tx_in) == 2
    assert result.tx.tx_out[1].value == 5000


def test_resend_fund_fails():
    wallet = FakeWallet()
    wallet.fund_results = [RuntimeError("insufficient funds")]
    with pytest.raises(RelayerError, match="failed to fund transaction"):
        make_relayer(wallet).maybe_resend_second_tx(tx2_info(600), 1000)


def test_resend_rbf_not_met():
    wallet = FakeWallet()
    wallet.mempool_entry = MempoolEntry(descendant_count=50, descendant_fees=1900,
                                        descendant_size=500)
    with pytest.raises(RelayerError, match="RBF requirements not met") as info:
        make_relayer(wallet).maybe_resend_second_tx(tx2_info(10000), 2000)
    assert isinstance(info.value.__cause__, FeeIncrementTooSmallError)


def test_resend_not_in_mempool():
    wallet = FakeWallet()
    wallet.mempool_error = RuntimeError("tx not found")
    with pytest.raises(RelayerError) as info:
        make_relayer(wallet).maybe_resend_second_tx(tx2_info(10000), 2000)
    assert isinstance(info.value.__cause__, TxNotInMempoolError)
    assert "not found in mempool" in str(info.value)


@pytest.mark.parametrize("attr,msg", [("unlock_error", "wallet unlock failed"),
                                      ("send_error", "transaction rejected")])
def test_resend_sign_or_send_fails(attr, msg):
    wallet = FakeWallet()
    wallet.mempool_entry = MempoolEntry(descendant_count=50, descendant_fees=400,
                                        descendant_size=500)
    setattr(wallet, attr, RuntimeError(msg))
    with pytest.raises(RuntimeError, match=msg):
        make_relayer(wallet).maybe_resend_second_tx(tx2_info(10000), 2000)


# change address

SEGWIT = [
    "bc1q7gytzww8cnzgp390q8ztvkfl5r3pmzh3y7dxuvqwvd52ceq7034qldnk59",
    "bc1q6fceckkklar0qtx8w66x60qrafalruu5upllx8f0jdanwz8gex4sx79eml",
    "bc1qdh5ezhcx5fh7mlk0qwmy0pw89pxklnmrd9nwwr",
    "bc1qyujvyayzdr2znhsepa2cw40w7pkz0afr8hkxsg",
]
LEGACY = ["1GApPLw7MZsgvDrKKSi2GyN3uepup8w9ib", "1MzfDjLv3qwRyEJkF7kgviJnqVhH8och6N"]


@pytest.mark.parametrize("addrs,allowed", [
    (SEGWIT, SEGWIT), (LEGACY, LEGACY), (SEGWIT + LEGACY, SEGWIT)])
def test_get_change_address(addrs, allowed):
    wallet = FakeWallet()
    wallet.params = MAINNET
    wallet.unspent = [SimpleNamespace(address=a) for a in addrs]
    addr = make_relayer(wallet).get_change_address()
    assert str(addr) in allowed
    assert len(pay_to_addr_script(addr)) > 0


# checkpoint flow

def make_ckpt(epoch, status=CheckpointStatus.SEALED):
    return RawCheckpointWithMeta(RawCheckpoint(epoch), status)


def test_send_unsealed_checkpoint_counts_invalid(tmp_path):
    wallet = FakeWallet()
    with SubmitterStore(tmp_path) as store:
        rl = make_relayer(wallet, store=store)
        rl.send_checkpoint_to_btc(make_ckpt(1, CheckpointStatus.ACCUMULATING))
        assert rl.metrics.invalid_checkpoints == 1
        assert wallet.sent == []


def test_send_checkpoint_sends_two_txs_and_stores(tmp_path):
    wallet = FakeWallet()
    wallet.fund_results = [with_change(), with_change()]
    with SubmitterStore(tmp_path) as store:
        rl = make_relayer(wallet, store=store)
        rl.send_checkpoint_to_btc(make_ckpt(7))
        assert len(wallet.sent) == 2
        assert wallet.sent[1].tx_in[0].previous_out_point.hash == wallet.sent[0].tx_hash()
        stored = store.latest_checkpoint()
        assert stored.epoch == 7
        assert rl.last_submitted_checkpoint.epoch == 7
        rl.send_checkpoint_to_btc(make_ckpt(7))
        assert len(wallet.sent) == 2
        assert len(rl.metrics.submitted_segments) == 2


def test_send_checkpoint_skips_when_store_has_epoch(tmp_path):
    wallet = FakeWallet()
    with SubmitterStore(tmp_path) as store:
        store.put_checkpoint(StoredCheckpoint(data_tx(), data_tx(), 5))
        rl = make_relayer(wallet, store=store)
        rl.send_checkpoint_to_btc(make_ckpt(5))
        assert wallet.sent == []
        assert wallet.fund_calls == []


def test_resubmit_lower_epoch_is_invalid(tmp_path):
    with SubmitterStore(tmp_path) as store:
        rl = make_relayer(FakeWallet(), store=store)
        rl.last_submitted_checkpoint = CheckpointInfo(epoch=10)
        rl.maybe_resubmit_second_checkpoint_tx(make_ckpt(3))
        assert rl.metrics.invalid_checkpoints == 1


def test_resubmit_waits_for_interval(tmp_path):
    import time
    wallet = FakeWallet()
    with SubmitterStore(tmp_path) as store:
        rl = make_relayer(wallet, store=store, config=SubmitterConfig(resend_interval_seconds=3600))
        rl.last_submitted_checkpoint = CheckpointInfo(
            epoch=3, ts=time.time(), tx1=tx2_info(10000), tx2=tx2_info(10000))
        rl.maybe_resubmit_second_checkpoint_tx(make_ckpt(3))
        assert rl.metrics.resent_checkpoints == 0
        assert wallet.sent == []