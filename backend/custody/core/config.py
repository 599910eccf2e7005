# backend/custody/core/config.py
from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_ENV: str = "dev"
    DB_URL: str
    JWT_SECRET: str
    JWT_EXPIRE_MIN: int = 20
    CORS_ORIGINS: str = "http://localhost:3000"

    SUPER_ADMIN_EMAIL: str | None = None
    SUPER_ADMIN_PASSWORD: str | None = None

    # Set to True behind HTTPS in production
    COOKIE_SECURE: bool = False

    TELEGRAM_BOT_TOKEN: str | None = None
    TELEGRAM_CHAT_ID: str | None = None

    # Custody seed: Fernet token of the BIP-39 mnemonic, and the key that opens it.
    # The key must live outside the database (env / secret manager).
    MASTER_SEED_ENCRYPTED: str | None = None
    WALLET_ENCRYPTION_KEY: str | None = None

    # Bitcoin: Esplora REST for reads, bitcoind JSON-RPC for funding and broadcast
    BTC_API_URL: str = "https://blockstream.info/api"
    BTC_RPC_URL: str | None = None
    BTC_RPC_USER: str | None = None
    BTC_RPC_PASSWORD: str | None = None

    # Ethereum JSON-RPC (ETH + USDT ERC-20)
    ETH_RPC_URL: str | None = None
    ETH_CHAIN_ID: int = 1
    USDT_CONTRACT_ADDRESS: str = "0xdAC17F958D2ee523a2206206994597C13D831ec7"

    # Confirmation policy
    CONFIRMATIONS_BTC: int = 6
    CONFIRMATIONS_ETH: int = 12
    CONFIRMATIONS_USDT: int = 12

    # Polling
    MONITOR_ENABLED: bool = True
    WALLET_POLL_INTERVAL_SECONDS: int = 60
    BTC_POLL_INTERVAL_SECONDS: int = 120
    MAINTENANCE_INTERVAL_SECONDS: int = 300
    POLL_WORKERS: int = 4
    # account-chain pool addresses are block-scanned from a stored cursor
    POOL_SCAN_MAX_BLOCKS: int = 500
    POOL_SCAN_LOOKBACK_BLOCKS: int = 1000
    CHAIN_HTTP_TIMEOUT_SECONDS: int = 15
    SEND_TIMEOUT_SECONDS: int = 30

    # Withdrawal fee rates (fraction of the requested amount)
    WITHDRAWAL_FEE_BTC: Decimal = Decimal("0.0005")
    WITHDRAWAL_FEE_ETH: Decimal = Decimal("0.005")
    WITHDRAWAL_FEE_USDT: Decimal = Decimal("0.01")

    # Sweeping display addresses into the pool
    SWEEP_ENABLED: bool = True
    SWEEP_MIN_INTERVAL_SECONDS: int = 300
    SWEEP_MAX_BACKOFF_SECONDS: int = 3600
    SWEEP_DUST_ETH: Decimal = Decimal("0.0005")

    # Allowed shortfall of on-chain pool balance vs. ledger liabilities before alerting
    POOL_RECONCILE_TOLERANCE: Decimal = Decimal("0")

    def required_confirmations(self) -> dict[str, int]:
        return {
            "BTC": self.CONFIRMATIONS_BTC,
            "ETH": self.CONFIRMATIONS_ETH,
            "USDT": self.CONFIRMATIONS_USDT,
        }

    def withdrawal_fee_rates(self) -> dict[str, Decimal]:
        return {
            "BTC": self.WITHDRAWAL_FEE_BTC,
            "ETH": self.WITHDRAWAL_FEE_ETH,
            "USDT": self.WITHDRAWAL_FEE_USDT,
        }


settings = Settings()
