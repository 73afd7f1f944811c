"""Persistent storage of the last submitted checkpoint."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

from ckptrelay.wire import MsgTx, deserialize_tx

_BUCKET = "storedckpt"
_LAST_SUBMITTED_KEY = b"lastsubckpt"
_DB_FILE = "submitter.db"


class CorruptedDBError(Exception):
    """The on-disk representation is not what was expected."""

    def __init__(self, message: str = "db is corrupted") -> None:
        super().__init__(message)


def _varint(n: int) -> bytes:
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    value = shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7


@dataclass
class StoredCheckpoint:
    tx1: MsgTx
    tx2: MsgTx
    epoch: int

    def to_bytes(self) -> bytes:
        """Encode as a protobuf message (tx1=1, tx2=2, epoch=3)."""
        tx1 = self.tx1.serialize()
        tx2 = self.tx2.serialize()
        return (b"\x0a" + _varint(len(tx1)) + tx1
                + b"\x12" + _varint(len(tx2)) + tx2
                + b"\x18" + _varint(self.epoch))


def decode_stored_checkpoint(data: bytes) -> StoredCheckpoint:
    """Decode bytes written by StoredCheckpoint.to_bytes."""
    fields: dict[int, bytes | int] = {}
    pos = 0
    while pos < len(data):
        tag, pos = _read_varint(data, pos)
        number, wire_type = tag >> 3, tag & 7
        if wire_type == 0:
            fields[number], pos = _read_varint(data, pos)
        elif wire_type == 2:
            length, pos = _read_varint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated field")
            fields[number] = data[pos:pos + length]
            pos += length
        else:
            raise ValueError(f"unsupported wire type {wire_type}")
    tx1, tx2 = fields.get(1, b""), fields.get(2, b"")
    if not isinstance(tx1, bytes) or not isinstance(tx2, bytes):
        raise ValueError("malformed stored checkpoint")
    epoch = fields.get(3, 0)
    if not isinstance(epoch, int):
        raise ValueError("malformed stored checkpoint")
    return StoredCheckpoint(deserialize_tx(tx1), deserialize_tx(tx2), epoch)


class SubmitterStore:
    """Key-value store for submitted checkpoints, backed by SQLite."""

    def __init__(self, path) -> None:
        target = str(path)
        if target != ":memory:" and Path(target).is_dir():
            target = str(Path(target) / _DB_FILE)
        self._conn = sqlite3.connect(target, check_same_thread=False)
        with self._conn:
            self._conn.execute(
                f"CREATE TABLE IF NOT EXISTS {_BUCKET} (key BLOB PRIMARY KEY, value BLOB NOT NULL)"
            )

    def _get(self, key: bytes) -> bytes | None:
        try:
            row = self._conn.execute(
                f"SELECT value FROM {_BUCKET} WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.OperationalError as exc:
            raise CorruptedDBError() from exc
        return None if row is None else bytes(row[0])

    def _put(self, key: bytes, value: bytes) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    f"INSERT OR REPLACE INTO {_BUCKET} (key, value) VALUES (?, ?)", (key, value)
                )
        except sqlite3.OperationalError as exc:
            raise CorruptedDBError() from exc

    def latest_checkpoint(self) -> StoredCheckpoint | None:
        """Return the last stored checkpoint, or None if none was stored."""
        data = self._get(_LAST_SUBMITTED_KEY)
        return None if data is None else decode_stored_checkpoint(data)

    def put_checkpoint(self, ckpt: StoredCheckpoint) -> None:
        self._put(_LAST_SUBMITTED_KEY, ckpt.to_bytes())

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SubmitterStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()