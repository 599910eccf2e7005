# backend/custody/core/keys.py
"""
HD key derivation for display and pool addresses.

Every address is derived from one BIP-39 seed along a BIP-44 path:

    m/44'/<coin>'/<account>'/0/<index>

Account 0 is reserved for the pool. User accounts and indexes are two 31-bit
folds of sha256(user_id), so an address can always be recomputed from the seed
and the user id alone. Nothing per-user is secret at rest.

The seed itself is stored as a Fernet token and opened once at startup with a
key kept outside the database. Missing or invalid material raises
SeedUnavailable; there is no fallback seed.
"""
import hashlib
import logging
from dataclasses import dataclass, field

from bip_utils import (
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip44,
    Bip44Changes,
    Bip44Coins,
)
from cryptography.fernet import Fernet, InvalidToken

from custody.core.enums import Currency
from custody.core.errors import SeedUnavailable

logger = logging.getLogger(__name__)

HARDENED_SPACE = 2**31
POOL_ACCOUNT = 0

# ETH and USDT (ERC-20) share one address
BIP44_COINS = {
    Currency.BTC: Bip44Coins.BITCOIN,
    Currency.ETH: Bip44Coins.ETHEREUM,
    Currency.USDT: Bip44Coins.ETHEREUM,
}
COIN_TYPES = {
    Currency.BTC: 0,
    Currency.ETH: 60,
    Currency.USDT: 60,
}


@dataclass(frozen=True)
class CustodyConfig:
    """Decrypted custody material, held for the process lifetime."""
    seed: bytes = field(repr=False)

    @classmethod
    def from_mnemonic(cls, mnemonic: str | None) -> "CustodyConfig":
        words = " ".join((mnemonic or "").split())
        if not words:
            raise SeedUnavailable("master seed is not configured")
        if not Bip39MnemonicValidator().IsValid(words):
            raise SeedUnavailable("master seed is not a valid BIP-39 mnemonic")
        return cls(seed=bytes(Bip39SeedGenerator(words).Generate()))


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    derivation_path: str


@dataclass(frozen=True)
class SpendingKey:
    address: str
    derivation_path: str
    private_key_hex: str = field(repr=False)
    wif: str | None = field(default=None, repr=False)


def seal_mnemonic(mnemonic: str, encryption_key: str) -> str:
    """Encrypt a mnemonic into the token stored in MASTER_SEED_ENCRYPTED."""
    return Fernet(encryption_key.encode()).encrypt(mnemonic.encode()).decode()


def load_custody_config(sealed_seed: str | None, encryption_key: str | None) -> CustodyConfig:
    if not sealed_seed or not encryption_key:
        raise SeedUnavailable("MASTER_SEED_ENCRYPTED and WALLET_ENCRYPTION_KEY are required")
    try:
        mnemonic = Fernet(encryption_key.encode()).decrypt(sealed_seed.encode()).decode()
    except (InvalidToken, ValueError):
        raise SeedUnavailable("master seed could not be decrypted")
    return CustodyConfig.from_mnemonic(mnemonic)


def derivation_index(user_id) -> tuple[int, int]:
    """(account, address_index) for a user; account never collides with the pool."""
    digest = hashlib.sha256(str(user_id).encode()).digest()
    account = int.from_bytes(digest[:4], "big") % (HARDENED_SPACE - 1) + 1
    index = int.from_bytes(digest[4:8], "big") % HARDENED_SPACE
    return account, index


def derivation_path(currency: Currency, account: int, index: int) -> str:
    return f"m/44'/{COIN_TYPES[currency]}'/{account}'/0/{index}"


class KeyDerivationEngine:
    def __init__(self, config: CustodyConfig | None):
        if config is None or not config.seed:
            raise SeedUnavailable("key derivation requires a custody seed")
        self._seed = config.seed
        self._roots = {}

    def _root(self, currency: Currency):
        coin = BIP44_COINS[currency]
        if coin not in self._roots:
            self._roots[coin] = Bip44.FromSeed(self._seed, coin)
        return self._roots[coin]

    def _node(self, currency: Currency, account: int, index: int):
        return (
            self._root(currency)
            .Purpose()
            .Coin()
            .Account(account)
            .Change(Bip44Changes.CHAIN_EXT)
            .AddressIndex(index)
        )

    def derive_address(self, user_id, currency: Currency) -> DerivedAddress:
        account, index = derivation_index(user_id)
        node = self._node(currency, account, index)
        return DerivedAddress(
            address=node.PublicKey().ToAddress(),
            derivation_path=derivation_path(currency, account, index),
        )

    def derive_spending_key(self, user_id, currency: Currency) -> SpendingKey:
        account, index = derivation_index(user_id)
        return self._spending_key(currency, account, index)

    def pool_address(self, currency: Currency) -> DerivedAddress:
        node = self._node(currency, POOL_ACCOUNT, 0)
        return DerivedAddress(
            address=node.PublicKey().ToAddress(),
            derivation_path=derivation_path(currency, POOL_ACCOUNT, 0),
        )

    def pool_spending_key(self, currency: Currency) -> SpendingKey:
        return self._spending_key(currency, POOL_ACCOUNT, 0)

    def _spending_key(self, currency: Currency, account: int, index: int) -> SpendingKey:
        node = self._node(currency, account, index)
        private_key = node.PrivateKey()
        return SpendingKey(
            address=node.PublicKey().ToAddress(),
            derivation_path=derivation_path(currency, account, index),
            private_key_hex=private_key.Raw().ToHex(),
            wif=private_key.ToWif() if currency == Currency.BTC else None,
        )
