"""Polling of sealed raw checkpoints from the checkpointing chain."""

from __future__ import annotations

import enum
import queue
from dataclasses import dataclass
from typing import Protocol


class CheckpointStatus(enum.IntEnum):
    ACCUMULATING = 0
    SEALED = 1
    SUBMITTED = 2
    CONFIRMED = 3
    FINALIZED = 4


@dataclass
class RawCheckpoint:
    epoch_num: int
    block_hash: bytes = b""
    bitmap: bytes = b""
    bls_multi_sig: bytes = b""


@dataclass
class RawCheckpointWithMeta:
    ckpt: RawCheckpoint
    status: CheckpointStatus = CheckpointStatus.ACCUMULATING
    bls_aggr_pk: bytes = b""
    power_sum: int = 0


class BabylonQueryClient(Protocol):
    def raw_checkpoint_list(self, status, pagination) -> list[RawCheckpointWithMeta]: ...


class Poller:
    """Fetches sealed checkpoints and queues the oldest one."""

    def __init__(self, client: BabylonQueryClient, buffer_size: int) -> None:
        self._client = client
        self.buffer_size = buffer_size
        self._queue: queue.Queue[RawCheckpointWithMeta] = queue.Queue(maxsize=buffer_size)

    def poll_sealed_checkpoints(self) -> None:
        """Query sealed checkpoints and push the one with the lowest epoch."""
        sealed = self._client.raw_checkpoint_list(CheckpointStatus.SEALED, None)
        if not sealed:
            return
        oldest = sealed[0]
        for ckpt in sealed:
            if oldest.ckpt.epoch_num > ckpt.ckpt.epoch_num:
                oldest = ckpt
        self._queue.put(oldest)

    def get_sealed_checkpoint(self, timeout=None) -> RawCheckpointWithMeta | None:
        """Wait for the next queued checkpoint; None if timeout expires."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None