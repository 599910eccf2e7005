# backend/custody/services/chain/registry.py
from custody.core.config import Settings
from custody.core.enums import ChainFamily, Currency
from custody.services.chain.base import ChainAdapter
from custody.services.chain.bitcoin import BitcoinAdapter
from custody.services.chain.ethereum import Erc20Adapter, EthereumAdapter

ADAPTER_TYPES: dict[Currency, type[ChainAdapter]] = {
    Currency.BTC: BitcoinAdapter,
    Currency.ETH: EthereumAdapter,
    Currency.USDT: Erc20Adapter,
}


def family_of(currency: Currency) -> ChainFamily:
    return ADAPTER_TYPES[currency].family


def build_adapters(settings: Settings) -> dict[Currency, ChainAdapter]:
    common = {
        "timeout": settings.CHAIN_HTTP_TIMEOUT_SECONDS,
        "send_timeout": settings.SEND_TIMEOUT_SECONDS,
    }
    return {
        Currency.BTC: BitcoinAdapter(
            settings.BTC_API_URL,
            rpc_url=settings.BTC_RPC_URL,
            rpc_user=settings.BTC_RPC_USER,
            rpc_password=settings.BTC_RPC_PASSWORD,
            **common,
        ),
        Currency.ETH: EthereumAdapter(settings.ETH_RPC_URL, chain_id=settings.ETH_CHAIN_ID, **common),
        Currency.USDT: Erc20Adapter(
            settings.ETH_RPC_URL,
            settings.USDT_CONTRACT_ADDRESS,
            chain_id=settings.ETH_CHAIN_ID,
            **common,
        ),
    }
