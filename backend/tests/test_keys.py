import pytest
from bip_utils import Bip84, Bip84Coins, Bip44Changes, Bip39SeedGenerator
from cryptography.fernet import Fernet

from custody.core.enums import Currency
from custody.core.errors import SeedUnavailable
from custody.core.keys import (
    CustodyConfig,
    KeyDerivationEngine,
    derivation_index,
    load_custody_config,
    seal_mnemonic,
)

from conftest import OTHER_MNEMONIC, POOL_BTC, POOL_ETH, TEST_MNEMONIC


class TestPoolAddresses:
    def test_pool_addresses_match_bip44_vectors(self, keys):
        assert keys.pool_address(Currency.ETH).address == POOL_ETH
        assert keys.pool_address(Currency.BTC).address == POOL_BTC
        assert keys.pool_address(Currency.ETH).derivation_path == "m/44'/60'/0'/0/0"
        assert keys.pool_address(Currency.BTC).derivation_path == "m/44'/0'/0'/0/0"

    def test_usdt_shares_the_eth_pool(self, keys):
        assert keys.pool_address(Currency.USDT).address == keys.pool_address(Currency.ETH).address

    def test_bip84_reference_vector_from_same_seed(self):
        # cross-check the seed generation against the published BIP-84 vector
        seed = Bip39SeedGenerator(TEST_MNEMONIC).Generate()
        node = Bip84.FromSeed(seed, Bip84Coins.BITCOIN).Purpose().Coin().Account(0).Change(
            Bip44Changes.CHAIN_EXT
        ).AddressIndex(0)
        assert node.PublicKey().ToAddress() == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"

    def test_spending_key_matches_address(self, keys):
        key = keys.pool_spending_key(Currency.BTC)
        assert key.address == POOL_BTC
        assert key.wif
        assert len(key.private_key_hex) == 64
        assert keys.pool_spending_key(Currency.ETH).wif is None

    def test_private_key_not_in_repr(self, keys):
        key = keys.pool_spending_key(Currency.ETH)
        assert key.private_key_hex not in repr(key)


class TestUserAddresses:
    def test_derivation_is_deterministic(self, custody_config):
        a = KeyDerivationEngine(custody_config).derive_address(42, Currency.ETH)
        b = KeyDerivationEngine(custody_config).derive_address(42, Currency.ETH)
        assert a == b

    def test_users_get_distinct_addresses(self, keys):
        addresses = {keys.derive_address(user_id, Currency.BTC).address for user_id in range(1, 51)}
        assert len(addresses) == 50

    def test_user_account_never_hits_pool_account(self):
        for user_id in range(1, 500):
            account, index = derivation_index(user_id)
            assert 1 <= account < 2**31
            assert 0 <= index < 2**31

    def test_user_address_differs_from_pool(self, keys):
        for currency in (Currency.BTC, Currency.ETH):
            assert keys.derive_address(1, currency).address != keys.pool_address(currency).address

    def test_path_recorded(self, keys):
        account, index = derivation_index(7)
        assert keys.derive_address(7, Currency.ETH).derivation_path == f"m/44'/60'/{account}'/0/{index}"

    def test_spending_key_address_matches_display_address(self, keys):
        assert keys.derive_spending_key(9, Currency.ETH).address == keys.derive_address(9, Currency.ETH).address

    def test_other_seed_gives_other_addresses(self, keys):
        other = KeyDerivationEngine(CustodyConfig.from_mnemonic(OTHER_MNEMONIC))
        assert other.pool_address(Currency.ETH).address != keys.pool_address(Currency.ETH).address
        assert other.derive_address(1, Currency.BTC).address != keys.derive_address(1, Currency.BTC).address


class TestSeedLoading:
    def test_sealed_seed_round_trip(self):
        key = Fernet.generate_key().decode()
        sealed = seal_mnemonic(TEST_MNEMONIC, key)
        assert TEST_MNEMONIC not in sealed
        config = load_custody_config(sealed, key)
        assert KeyDerivationEngine(config).pool_address(Currency.ETH).address == POOL_ETH

    @pytest.mark.parametrize("sealed, key", [(None, None), ("token", None), (None, "key")])
    def test_missing_material_fails_closed(self, sealed, key):
        with pytest.raises(SeedUnavailable):
            load_custody_config(sealed, key)

    def test_wrong_key_fails_closed(self):
        sealed = seal_mnemonic(TEST_MNEMONIC, Fernet.generate_key().decode())
        with pytest.raises(SeedUnavailable):
            load_custody_config(sealed, Fernet.generate_key().decode())

    def test_invalid_mnemonic_rejected(self):
        with pytest.raises(SeedUnavailable):
            CustodyConfig.from_mnemonic("abandon " * 12)
        with pytest.raises(SeedUnavailable):
            CustodyConfig.from_mnemonic("")

    def test_engine_requires_seed(self):
        with pytest.raises(SeedUnavailable):
            KeyDerivationEngine(None)
