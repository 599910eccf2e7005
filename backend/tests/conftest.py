"""
Shared fixtures.

Settings are read from the environment when custody.core.config is first
imported, so the database URL and secrets are set before any custody import.
Every test gets freshly created tables in one SQLite file.
"""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="custody-tests-")
os.environ["DB_URL"] = f"sqlite:///{_DB_DIR}/custody.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["MONITOR_ENABLED"] = "false"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["TELEGRAM_CHAT_ID"] = ""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from custody import models  # noqa: F401  registers tables
from custody.core.config import settings
from custody.core.db import Base, SessionLocal, engine
from custody.core.enums import UserRole
from custody.core.keys import CustodyConfig, KeyDerivationEngine
from custody.core.security import hash_password
from custody.models import User
from custody.services.ledger import Ledger
from custody.services.runtime import build_runtime, set_runtime

from fakes import make_fake_adapters

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
OTHER_MNEMONIC = "legal winner thank year wave sausage worth useful legal winner thank yellow"

# BIP-44 m/44'/60'/0'/0/0 and m/44'/0'/0'/0/0 for TEST_MNEMONIC
POOL_ETH = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
POOL_BTC = "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"

# EIP-55 reference addresses
ETH_DEST = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
ETH_DEST_2 = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"


@pytest.fixture(autouse=True)
def fresh_tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    set_runtime(None)


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user():
    def _make(email: str | None = None, role: str = UserRole.USER.value, password: str = "correct horse battery"):
        with SessionLocal() as session:
            count = session.query(User).count()
            user = User(
                email=email or f"user{count + 1}@custody-app.com",
                password_hash=hash_password(password),
                role=role,
            )
            session.add(user)
            session.commit()
            return user

    return _make


@pytest.fixture(scope="session")
def custody_config():
    return CustodyConfig.from_mnemonic(TEST_MNEMONIC)


@pytest.fixture(scope="session")
def keys(custody_config):
    return KeyDerivationEngine(custody_config)


@pytest.fixture
def ledger():
    return Ledger()


@pytest.fixture
def adapters():
    return make_fake_adapters()


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def runtime(adapters, custody_config, notifier):
    rt = build_runtime(settings, adapters=adapters, custody_config=custody_config, notifier=notifier)
    rt.pool.initialize()
    return rt


@pytest.fixture
def funded_user(make_user, ledger):
    """A user already holding balances; returns a function (currency, amount) -> user."""
    def _fund(currency: str, amount: str, user=None):
        user = user or make_user()
        with SessionLocal() as session:
            ledger.credit(session, user.id, currency, Decimal(amount), f"seed:{user.id}:{currency}:{amount}")
            session.commit()
        return user

    return _fund
