"""Bitcoin transaction wire format: serialization, hashing and sizes."""

from __future__ import annotations

import copy as _copy
import hashlib
from dataclasses import dataclass, field

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_RETURN = 0x6A

TX_VERSION = 1
MAX_TX_IN_SEQUENCE = 0xFFFFFFFF
WITNESS_SCALE_FACTOR = 4


def double_sha256(data: bytes) -> bytes:
    """Return SHA256(SHA256(data))."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _varint(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def _var_bytes(data: bytes) -> bytes:
    return _varint(len(data)) + data


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def read(self, n: int) -> bytes:
        if self._pos + n > len(self._data):
            raise ValueError("unexpected end of transaction data")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def peek(self, n: int) -> bytes:
        return self._data[self._pos:self._pos + n]

    def uint(self, n: int) -> int:
        return int.from_bytes(self.read(n), "little")

    def varint(self) -> int:
        first = self.read(1)[0]
        if first < 0xFD:
            return first
        return self.uint({0xFD: 2, 0xFE: 4, 0xFF: 8}[first])

    def var_bytes(self) -> bytes:
        return self.read(self.varint())

    @property
    def exhausted(self) -> bool:
        return self._pos == len(self._data)


@dataclass
class OutPoint:
    """Reference to an output of a previous transaction (hash in internal byte order)."""

    hash: bytes = b"\x00" * 32
    index: int = 0

    def __post_init__(self) -> None:
        if len(self.hash) != 32:
            raise ValueError("outpoint hash must be 32 bytes")


@dataclass
class TxIn:
    previous_out_point: OutPoint = field(default_factory=OutPoint)
    signature_script: bytes = b""
    witness: list[bytes] = field(default_factory=list)
    sequence: int = MAX_TX_IN_SEQUENCE


@dataclass
class TxOut:
    value: int = 0
    pk_script: bytes = b""


@dataclass
class MsgTx:
    version: int = TX_VERSION
    tx_in: list[TxIn] = field(default_factory=list)
    tx_out: list[TxOut] = field(default_factory=list)
    lock_time: int = 0

    def add_tx_in(self, tx_in: TxIn) -> None:
        self.tx_in.append(tx_in)

    def add_tx_out(self, tx_out: TxOut) -> None:
        self.tx_out.append(tx_out)

    def _has_witness(self) -> bool:
        return any(txin.witness for txin in self.tx_in)

    def _encode(self, with_witness: bool) -> bytes:
        witness = with_witness and self._has_witness()
        parts = [self.version.to_bytes(4, "little", signed=True)]
        if witness:
            parts.append(b"\x00\x01")
        parts.append(_varint(len(self.tx_in)))
        for txin in self.tx_in:
            op = txin.previous_out_point
            parts += [op.hash, op.index.to_bytes(4, "little"),
                      _var_bytes(txin.signature_script),
                      txin.sequence.to_bytes(4, "little")]
        parts.append(_varint(len(self.tx_out)))
        for txout in self.tx_out:
            parts += [txout.value.to_bytes(8, "little", signed=True),
                      _var_bytes(txout.pk_script)]
        if witness:
            for txin in self.tx_in:
                parts.append(_varint(len(txin.witness)))
                parts += [_var_bytes(item) for item in txin.witness]
        parts.append(self.lock_time.to_bytes(4, "little"))
        return b"".join(parts)

    def serialize(self) -> bytes:
        """Serialize including witness data when any input carries it."""
        return self._encode(with_witness=True)

    def serialize_size(self) -> int:
        return len(self.serialize())

    def tx_hash(self) -> bytes:
        """Transaction hash (without witness) in internal byte order."""
        return double_sha256(self._encode(with_witness=False))

    def txid(self) -> str:
        """Transaction id as the usual reversed hex string."""
        return self.tx_hash()[::-1].hex()

    def copy(self) -> "MsgTx":
        return _copy.deepcopy(self)


def deserialize_tx(data: bytes) -> MsgTx:
    """Parse a serialized transaction, with or without witness data."""
    reader = _Reader(bytes(data))
    version = int.from_bytes(reader.read(4), "little", signed=True)
    witness = False
    if reader.peek(2) == b"\x00\x01":
        reader.read(2)
        witness = True
    tx = MsgTx(version=version)
    for _ in range(reader.varint()):
        op_hash = reader.read(32)
        index = reader.uint(4)
        script = reader.var_bytes()
        sequence = reader.uint(4)
        tx.add_tx_in(TxIn(OutPoint(op_hash, index), script, [], sequence))
    for _ in range(reader.varint()):
        value = int.from_bytes(reader.read(8), "little", signed=True)
        tx.add_tx_out(TxOut(value, reader.var_bytes()))
    if witness:
        for txin in tx.tx_in:
            txin.witness = [reader.var_bytes() for _ in range(reader.varint())]
    tx.lock_time = reader.uint(4)
    if not reader.exhausted:
        raise ValueError("trailing bytes after transaction")
    return tx


def _push_data(data: bytes) -> bytes:
    n = len(data)
    if n == 0 or (n == 1 and data[0] == 0):
        return bytes([OP_0])
    if n == 1 and 1 <= data[0] <= 16:
        return bytes([OP_1 - 1 + data[0]])
    if n == 1 and data[0] == 0x81:
        return bytes([OP_1NEGATE])
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xFF:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + n.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + n.to_bytes(4, "little") + data


def build_op_return_script(data: bytes) -> bytes:
    """Build an OP_RETURN output script carrying data as a canonical push."""
    return bytes([OP_RETURN]) + _push_data(bytes(data))


def calculate_tx_virtual_size(tx: MsgTx | None) -> int:
    """Virtual size in vbytes as used by mempool policy."""
    if tx is None:
        raise ValueError("tx param nil")
    base = len(tx._encode(with_witness=False))
    total = len(tx.serialize())
    weight = base * (WITNESS_SCALE_FACTOR - 1) + total
    return (weight + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR