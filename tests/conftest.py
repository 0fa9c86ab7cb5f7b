"""Test fixtures and configuration."""

import logging
import os
import sys

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set ENVIRONMENT for pydantic settings
os.environ["ENVIRONMENT"] = "testing"

from kita_fees.database import Base, get_db  # noqa: E402
from kita_fees.logger import mask_ibans  # noqa: E402
from kita_fees.services import scoring  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite://"


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_ibans,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
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


@pytest.fixture(autouse=True)
def fresh_reconciliation_config(monkeypatch):
    """Every test reads config/reconciliation.yaml (plus its own env overrides) afresh."""
    for name in (
        "RECONCILIATION_AUTO_MATCH_THRESHOLD",
        "RECONCILIATION_MIN_CONFIDENCE",
        "RECONCILIATION_SUBSET_TOLERANCE",
        "RECONCILIATION_LATE_FEE_AMOUNT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(scoring, "_config_cache", None)
    yield


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """In-memory SQLite engine with a fresh schema per test.

    pysqlite's own transaction handling breaks SAVEPOINT; the listeners hand
    BEGIN over to SQLAlchemy and switch on foreign key enforcement.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    from kita_fees import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(db_engine):
    """Database session for one test; the whole database is discarded afterwards."""
    session_maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db):
    """HTTP client bound to the app, sharing the test session with the test body."""
    from kita_fees.main import app

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def file_sessions(tmp_path):
    """Session factory over a file database, so several sessions hold their own connections.

    pysqlite's lazy BEGIN is kept: a session that has only read holds no lock,
    and another session can commit in the meantime.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    from kita_fees import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
