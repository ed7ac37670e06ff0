"""Test fixtures and configuration."""

import asyncio
import logging
import os
import sys
from uuid import uuid4

# Settings and the module-level engine are built at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "testing"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
import structlog  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from finance_recon.logger import get_logger  # noqa: E402
from finance_recon.services import matching  # noqa: E402

logger = get_logger(__name__)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


# --- Matching config cache isolation ---
@pytest.fixture(autouse=True)
def reset_matching_config():
    """Drop the cached YAML config so env and file overrides do not leak between tests."""
    matching._config_cache = None
    yield
    matching._config_cache = None


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """In-memory SQLite engine with the full schema.

    StaticPool keeps a single connection so every session sees the same database.
    """
    from finance_recon.database import Base
    from finance_recon import models  # noqa: F401

    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    try:
        await asyncio.wait_for(engine.dispose(), timeout=10.0)
    except asyncio.TimeoutError:
        logger.error("Engine disposal timed out")


@pytest_asyncio.fixture(scope="function")
async def session_maker(db_engine):
    """Route the application's get_db dependency to the test engine."""
    from finance_recon import database

    maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    previous = database.set_test_session_maker(maker)
    yield maker
    database.set_test_session_maker(previous)


@pytest_asyncio.fixture(scope="function")
async def db(session_maker):
    """Session used directly by service-level tests."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def user_id():
    return uuid4()


@pytest_asyncio.fixture(scope="function")
async def client(session_maker, user_id):
    """Async test client authenticated as ``user_id``."""
    from finance_recon.main import app
    from tests.factories import make_access_token

    token = make_access_token(user_id)
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {token}"},
    ) as client_instance:
        yield client_instance


@pytest_asyncio.fixture(scope="function")
async def public_client(session_maker):
    """Async test client without auth headers."""
    from finance_recon.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client_instance:
        yield client_instance
