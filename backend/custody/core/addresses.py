# backend/custody/core/addresses.py
import re

import base58
from bip_utils import SegwitBech32Decoder
from eth_utils import is_address, to_checksum_address

from custody.core.enums import Currency
from custody.core.errors import InvalidAddress

# mainnet P2PKH / P2SH version bytes
BTC_BASE58_VERSIONS = (0x00, 0x05)
BTC_BECH32_HRP = "bc"
_BASE58_RE = re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$")
_BECH32_RE = re.compile(r"^bc1[02-9ac-hj-np-z]{11,71}$", re.IGNORECASE)
_EVM_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def _validate_btc(address: str) -> str:
    if _BASE58_RE.match(address):
        try:
            payload = base58.b58decode_check(address)
        except ValueError:
            raise InvalidAddress("BTC address checksum mismatch", address=address)
        if len(payload) != 21 or payload[0] not in BTC_BASE58_VERSIONS:
            raise InvalidAddress("BTC address has an unknown version", address=address)
        return address
    if _BECH32_RE.match(address):
        try:
            SegwitBech32Decoder.Decode(BTC_BECH32_HRP, address.lower())
        except Exception:
            raise InvalidAddress("BTC bech32 address is malformed", address=address)
        return address.lower()
    raise InvalidAddress("not a BTC mainnet address", address=address)


def _validate_evm(address: str) -> str:
    # is_address rejects mixed-case input whose EIP-55 checksum is wrong
    if not _EVM_RE.match(address) or not is_address(address):
        raise InvalidAddress("not a valid Ethereum address", address=address)
    return to_checksum_address(address)


def validate_address(currency: Currency, address: str | None) -> str:
    """Return the canonical form of `address` or raise InvalidAddress."""
    address = (address or "").strip()
    if not address:
        raise InvalidAddress("destination address is required")
    if currency == Currency.BTC:
        return _validate_btc(address)
    return _validate_evm(address)


def same_address(currency: Currency, a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    if currency == Currency.BTC:
        return a == b if a[:3].lower() != "bc1" else a.lower() == b.lower()
    return a.lower() == b.lower()
