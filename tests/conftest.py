"""
Shared pytest fixtures for billing API tests.
"""

import os
import sys
import tempfile
from pathlib import Path

# Configure the app before anything imports billing_api.config
_TEST_DB = Path(tempfile.gettempdir()) / f"billing_api_test_{os.getpid()}.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")
os.environ.setdefault("ZARINPAL_MODE", "mock")
os.environ.setdefault("SIGNATURE_SECRET", "test-signature-secret")
os.environ.setdefault("APP_URL", "https://billing.test")
os.environ.setdefault("LOG_JSON", "false")

# Project root for billing_api, this directory for the factories module
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_api.config import get_settings
from billing_api.database import Base
from billing_api.services.contract_cookie import ContractCookieCodec
from billing_api.services.contracts import ContractService
from billing_api.services.fake_gateway import FakeGatewayClient
from billing_api.services.signature_cipher import SignatureCipher
from billing_api.shutdown import reset_shutdown_state
from factories import make_user

TEST_SECRET = "test-signature-secret"


@pytest.fixture(autouse=True)
def _not_draining():
    """Leaving a TestClient runs the shutdown drain; start every test ready."""
    reset_shutdown_state()
    yield
    reset_shutdown_state()


@pytest.fixture(scope="session")
def cipher():
    """Key derivation is slow, so share one cipher across the run."""
    return SignatureCipher(TEST_SECRET)


@pytest.fixture
def cookies():
    return ContractCookieCodec(TEST_SECRET, max_age=3600)


@pytest.fixture
def gateway():
    """Fresh fake gateway for each test."""
    return FakeGatewayClient()


@pytest_asyncio.fixture
async def db_session():
    """Isolated in-memory database with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def user(db_session):
    return await make_user(db_session)


@pytest_asyncio.fixture
async def other_user(db_session):
    return await make_user(db_session, email="reza@example.com")


@pytest.fixture
def service(db_session, gateway, cipher, cookies):
    return ContractService(
        db=db_session,
        gateway=gateway,
        cipher=cipher,
        cookies=cookies,
        settings=get_settings(),
    )
