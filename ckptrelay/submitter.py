"""The checkpoint submitter: polls sealed checkpoints and relays them to Bitcoin."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from ckptrelay.estimator import new_fee_estimator
from ckptrelay.poller import Poller, RawCheckpoint
from ckptrelay.relayer import Relayer, RelayerMetrics, SubmitterConfig
from ckptrelay.store import SubmitterStore

log = logging.getLogger(__name__)


class BabylonQueryClient(Protocol):
    def raw_checkpoint_list(self, status, pagination): ...

    def btc_checkpoint_params(self): ...


@dataclass
class SubmitterMetrics:
    relayer: RelayerMetrics = field(default_factory=RelayerMetrics)
    failed_checkpoints: int = 0
    last_checkpoint_time: float = field(default_factory=time.time)

    def record_checkpoint(self) -> None:
        self.last_checkpoint_time = time.time()

    @property
    def seconds_since_last_checkpoint(self) -> float:
        return time.time() - self.last_checkpoint_time


def decode_checkpoint_tag(tag_hex: str) -> bytes:
    """Decode the hex checkpoint tag from the chain parameters."""
    try:
        return bytes.fromhex(tag_hex)
    except ValueError as exc:
        raise ValueError(f"failed to decode checkpoint tag: {exc}") from exc


def _retry(fn: Callable, delay: float, max_delay: float, attempts: int):
    attempts = max(attempts, 1)
    for n in range(attempts):
        try:
            return fn()
        except Exception:
            if n == attempts - 1:
                raise
            time.sleep(min(delay * (2 ** n), max_delay))
    raise AssertionError("unreachable")


class Submitter:
    """Runs the polling and processing loops in background threads."""

    def __init__(self, config: SubmitterConfig, wallet, query_client: BabylonQueryClient,
                 encoder: Callable[[bytes, RawCheckpoint], tuple[bytes, bytes]],
                 estimator, store: SubmitterStore, retry_sleep: float,
                 max_retry_sleep: float, max_retry_times: int) -> None:
        try:
            params = _retry(query_client.btc_checkpoint_params,
                            retry_sleep, max_retry_sleep, max_retry_times)
        except Exception as exc:
            raise RuntimeError(f"failed to get checkpoint params: {exc}") from exc
        self.checkpoint_tag = decode_checkpoint_tag(params.checkpoint_tag)
        self.config = config
        self.poller = Poller(query_client, config.buffer_size)
        if estimator is None:
            estimator = new_fee_estimator(wallet.get_btc_config())
        self.metrics = SubmitterMetrics()
        tag = self.checkpoint_tag
        self.relayer = Relayer(
            wallet, wallet.get_btc_config().wallet_name,
            lambda ckpt: encoder(tag, ckpt), estimator, config, store, self.metrics.relayer,
        )
        self._lock = threading.Lock()
        self._quit = threading.Event()
        self._started = False
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Start the loops; restart them after a completed stop."""
        with self._lock:
            if self._quit.is_set():
                self.wait_for_shutdown()
                self._quit = threading.Event()
            elif self._started:
                return
            self._started = True
            quit_event = self._quit
            self._threads = [
                threading.Thread(target=self._poll_checkpoints, args=(quit_event,), daemon=True),
                threading.Thread(target=self._process_checkpoints, args=(quit_event,), daemon=True),
            ]
        for thread in self._threads:
            thread.start()
        self.metrics.record_checkpoint()
        log.info("Successfully created the vigilant submitter")

    def stop(self) -> None:
        with self._lock:
            self._quit.set()

    def shutting_down(self) -> bool:
        with self._lock:
            return self._quit.is_set()

    def wait_for_shutdown(self) -> None:
        for thread in list(self._threads):
            thread.join()

    def _poll_checkpoints(self, quit_event: threading.Event) -> None:
        interval = self.config.polling_interval_seconds
        while not quit_event.wait(interval):
            try:
                self.poller.poll_sealed_checkpoints()
            except Exception as exc:
                log.error("failed to query raw checkpoints: %s", exc)

    def _process_checkpoints(self, quit_event: threading.Event) -> None:
        while not quit_event.is_set():
            ckpt = self.poller.get_sealed_checkpoint(timeout=0.05)
            if ckpt is None:
                continue
            epoch = ckpt.ckpt.epoch_num
            try:
                self.relayer.send_checkpoint_to_btc(ckpt)
            except Exception as exc:
                log.error("Failed to submit the raw checkpoint for %s: %s", epoch, exc)
                self.metrics.failed_checkpoints += 1
                continue
            try:
                self.relayer.maybe_resubmit_second_checkpoint_tx(ckpt)
            except Exception as exc:
                log.error("Failed to resubmit the raw checkpoint for %s: %s", epoch, exc)
                self.metrics.failed_checkpoints += 1
            self.metrics.record_checkpoint()