"""Bitcoin address decoding, encoding and change-address selection."""

from __future__ import annotations

import enum
import hashlib
import random
from dataclasses import dataclass

_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32 = 1
_BECH32M = 0x2BC830A3
_B58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


class AddressKind(enum.Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"


@dataclass(frozen=True)
class NetParams:
    name: str
    bech32_hrp: str
    pubkey_hash_addr_id: int
    script_hash_addr_id: int


MAINNET = NetParams("mainnet", "bc", 0x00, 0x05)
TESTNET = NetParams("testnet3", "tb", 0x6F, 0xC4)
REGTEST = NetParams("regtest", "bcrt", 0x6F, 0xC4)
SIGNET = NetParams("signet", "tb", 0x6F, 0xC4)
SIMNET = NetParams("simnet", "sb", 0x3F, 0x7B)


def _polymod(values):
    gen = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
    chk = 1
    for v in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i, g in enumerate(gen):
            if (top >> i) & 1:
                chk ^= g
    return chk


def _hrp_expand(hrp):
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convertbits(data, frombits, tobits, pad):
    acc = bits = 0
    out = []
    maxv = (1 << tobits) - 1
    for value in data:
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            out.append((acc >> bits) & maxv)
    if pad:
        if bits:
            out.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("invalid padding in bech32 data")
    return out


def _bech32_encode(hrp, witver, program):
    data = [witver] + _convertbits(program, 8, 5, True)
    const = _BECH32 if witver == 0 else _BECH32M
    poly = _polymod(_hrp_expand(hrp) + data + [0] * 6) ^ const
    checksum = [(poly >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_CHARSET[d] for d in data + checksum)


def _bech32_decode(addr, hrp_expected):
    if addr.lower() != addr and addr.upper() != addr:
        raise ValueError("mixed case bech32 address")
    addr = addr.lower()
    pos = addr.rfind("1")
    if pos < 1 or pos + 7 > len(addr):
        raise ValueError("invalid bech32 separator position")
    hrp = addr[:pos]
    if hrp != hrp_expected:
        raise ValueError("address is for a different network")
    try:
        data = [_CHARSET.index(c) for c in addr[pos + 1:]]
    except ValueError:
        raise ValueError("invalid bech32 character") from None
    const = _polymod(_hrp_expand(hrp) + data)
    if const not in (_BECH32, _BECH32M) or not data[:-6]:
        raise ValueError("invalid bech32 checksum")
    witver = data[0]
    program = bytes(_convertbits(data[1:-6], 5, 8, False))
    if (witver == 0) != (const == _BECH32):
        raise ValueError("wrong bech32 variant for witness version")
    if witver == 0 and len(program) == 20:
        return AddressKind.P2WPKH, program
    if witver == 0 and len(program) == 32:
        return AddressKind.P2WSH, program
    if witver == 1 and len(program) == 32:
        return AddressKind.P2TR, program
    raise ValueError("unsupported witness program")


def _checksum(payload):
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]


def _b58check_decode(addr):
    num = 0
    for c in addr:
        idx = _B58.find(c)
        if idx < 0:
            raise ValueError("invalid base58 character")
        num = num * 58 + idx
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    raw = b"\x00" * (len(addr) - len(addr.lstrip("1"))) + body
    if len(raw) < 5 or _checksum(raw[:-4]) != raw[-4:]:
        raise ValueError("invalid base58 checksum")
    return raw[:-4]


def _b58check_encode(payload):
    raw = payload + _checksum(payload)
    num = int.from_bytes(raw, "big")
    out = ""
    while num:
        num, rem = divmod(num, 58)
        out = _B58[rem] + out
    return "1" * (len(raw) - len(raw.lstrip(b"\x00"))) + out


@dataclass(frozen=True)
class Address:
    kind: AddressKind
    program: bytes
    params: NetParams

    def __str__(self) -> str:
        if self.kind is AddressKind.P2PKH:
            return _b58check_encode(bytes([self.params.pubkey_hash_addr_id]) + self.program)
        if self.kind is AddressKind.P2SH:
            return _b58check_encode(bytes([self.params.script_hash_addr_id]) + self.program)
        witver = 1 if self.kind is AddressKind.P2TR else 0
        return _bech32_encode(self.params.bech32_hrp, witver, self.program)

    @property
    def is_segwit_bech32(self) -> bool:
        return self.kind in (AddressKind.P2WPKH, AddressKind.P2WSH)


def decode_address(addr: str, params: NetParams) -> Address:
    """Decode a string address for the given network."""
    if addr.lower().startswith(params.bech32_hrp + "1"):
        kind, program = _bech32_decode(addr, params.bech32_hrp)
        return Address(kind, program, params)
    payload = _b58check_decode(addr)
    if len(payload) != 21:
        raise ValueError("invalid address length")
    version, program = payload[0], payload[1:]
    if version == params.pubkey_hash_addr_id:
        return Address(AddressKind.P2PKH, program, params)
    if version == params.script_hash_addr_id:
        return Address(AddressKind.P2SH, program, params)
    raise ValueError("unknown address type")


def pay_to_addr_script(address: Address) -> bytes:
    """Return the output script paying to address."""
    p = address.program
    if address.kind is AddressKind.P2PKH:
        return b"\x76\xa9\x14" + p + b"\x88\xac"
    if address.kind is AddressKind.P2SH:
        return b"\xa9\x14" + p + b"\x87"
    if address.kind is AddressKind.P2WPKH:
        return b"\x00\x14" + p
    if address.kind is AddressKind.P2WSH:
        return b"\x00\x20" + p
    return b"\x51\x20" + p


def extract_pkscript_addresses(pk_script: bytes, params: NetParams) -> list[Address]:
    """Return the addresses a standard output script pays to, or an empty list."""
    s = bytes(pk_script)
    if len(s) == 25 and s[:3] == b"\x76\xa9\x14" and s[23:] == b"\x88\xac":
        return [Address(AddressKind.P2PKH, s[3:23], params)]
    if len(s) == 23 and s[:2] == b"\xa9\x14" and s[22] == 0x87:
        return [Address(AddressKind.P2SH, s[2:22], params)]
    if len(s) == 22 and s[:2] == b"\x00\x14":
        return [Address(AddressKind.P2WPKH, s[2:], params)]
    if len(s) == 34 and s[:2] == b"\x00\x20":
        return [Address(AddressKind.P2WSH, s[2:], params)]
    if len(s) == 34 and s[:2] == b"\x51\x20":
        return [Address(AddressKind.P2TR, s[2:], params)]
    return []


def select_change_address(addresses, params: NetParams) -> Address:
    """Pick a change address, preferring SegWit Bech32 ones (the last such is chosen)."""
    addresses = list(addresses)
    if not addresses:
        raise ValueError("no available addresses found in the wallet")
    decoded = [decode_address(a, params) for a in addresses]
    segwit = [a for a in decoded if a.is_segwit_bech32]
    if segwit:
        return segwit[-1]
    return random.choice(decoded)