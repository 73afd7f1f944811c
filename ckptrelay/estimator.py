"""Fee estimation against a bitcoind node over JSON-RPC."""

from __future__ import annotations

import base64
import itertools
import json
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

FEE_PER_KW_FLOOR = 253
MAX_BLOCK_TARGET = 1008
_SATS_PER_BTC = 100_000_000


def fee_per_kvbyte(sat_per_kw: int) -> int:
    """Convert sat/kw to sat/kvB."""
    return sat_per_kw * 4


def fee_per_kweight(sat_per_kvbyte: int) -> int:
    """Convert sat/kvB to sat/kw."""
    return sat_per_kvbyte // 4


def rpc_host_url(host: str, wallet_name: str) -> str:
    if wallet_name:
        return host + "/wallet/" + wallet_name
    return host


@dataclass
class BtcConfig:
    endpoint: str = "localhost:18443"
    wallet_name: str = "default"
    username: str = ""
    password: str = ""
    disable_tls: bool = True
    estimate_mode: str = "CONSERVATIVE"
    default_fee: int = 1000
    tx_fee_min: int = 1000
    tx_fee_max: int = 100_000
    target_block_num: int = 1
    wallet_pass: str = ""
    wallet_lock_time: int = 10


class _JsonRpc:
    def __init__(self, url: str, user: str, password: str, disable_tls: bool) -> None:
        scheme = "http" if disable_tls else "https"
        self._url = url if "://" in url else f"{scheme}://{url}"
        creds = base64.b64encode(f"{user}:{password}".encode()).decode()
        self._auth = f"Basic {creds}"
        self._ids = itertools.count(1)

    def __call__(self, method: str, params: list) -> Any:
        body = json.dumps({"jsonrpc": "1.0", "id": next(self._ids),
                           "method": method, "params": params}).encode()
        request = urllib.request.Request(
            self._url, data=body,
            headers={"Content-Type": "application/json", "Authorization": self._auth},
        )
        try:
            with urllib.request.urlopen(request, timeout=10) as resp:
                reply = json.load(resp)
        except OSError as exc:
            raise RuntimeError(f"rpc call {method} failed: {exc}") from exc
        if reply.get("error"):
            raise RuntimeError(f"rpc call {method} failed: {reply['error']}")
        return reply.get("result")


class BitcoindFeeEstimator:
    """Estimates fee rates (sat/kw) from bitcoind's estimatesmartfee."""

    def __init__(self, url: str, user: str = "", password: str = "",
                 estimate_mode: str = "CONSERVATIVE",
                 fallback_fee_per_kw: int = FEE_PER_KW_FLOOR,
                 disable_tls: bool = True,
                 rpc: Callable[[str, list], Any] | None = None) -> None:
        self._rpc = rpc or _JsonRpc(url, user, password, disable_tls)
        self.estimate_mode = estimate_mode
        self.fallback_fee_per_kw = fallback_fee_per_kw
        self._relay_fee_per_kw = FEE_PER_KW_FLOOR
        self.running = False

    def start(self) -> None:
        """Fetch the node's minimum relay fee."""
        info = self._rpc("getnetworkinfo", [])
        relay_kvb = round(float(info.get("relayfee", 0)) * _SATS_PER_BTC)
        self._relay_fee_per_kw = max(fee_per_kweight(relay_kvb), FEE_PER_KW_FLOOR)
        self.running = True

    def stop(self) -> None:
        """Mark the estimator stopped and drop the cached relay fee."""
        self.running = False
        self._relay_fee_per_kw = FEE_PER_KW_FLOOR

    def estimate_fee_per_kw(self, conf_target: int) -> int:
        target = min(conf_target, MAX_BLOCK_TARGET)
        result = self._rpc("estimatesmartfee", [target, self.estimate_mode]) or {}
        feerate = result.get("feerate")
        if not feerate or feerate <= 0:
            return self.fallback_fee_per_kw
        fee = fee_per_kweight(round(float(feerate) * _SATS_PER_BTC))
        return max(fee, self._relay_fee_per_kw)

    def relay_fee_per_kw(self) -> int:
        return self._relay_fee_per_kw


def new_fee_estimator(cfg: BtcConfig) -> BitcoindFeeEstimator:
    """Create and start an estimator for the configured node."""
    estimator = BitcoindFeeEstimator(
        rpc_host_url(cfg.endpoint, cfg.wallet_name),
        cfg.username, cfg.password, cfg.estimate_mode,
        fee_per_kweight(cfg.default_fee), cfg.disable_tls,
    )
    try:
        estimator.start()
    except Exception as exc:
        raise RuntimeError(f"failed to initiate the fee estimator: {exc}") from exc
    return estimator