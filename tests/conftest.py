"""Test fixtures and configuration."""

import os

# Must be set before any reconciler import: the engine is created at import time.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "testing"
os.environ["OPENROUTER_API_KEY"] = ""

import logging  # noqa: E402
import sys  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
import structlog  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from reconciler.database import Base, set_test_session_maker  # noqa: E402
from reconciler.services import scoring  # noqa: E402
from reconciler.services.scoring import DEFAULT_CONFIG  # noqa: E402


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


# --- Matching config isolation ---
@pytest.fixture(autouse=True)
def reset_matching_config(monkeypatch):
    """Keep env overrides and the config cache from leaking between tests."""
    monkeypatch.delenv("MATCHING_AUTO_MATCH_THRESHOLD", raising=False)
    monkeypatch.delenv("MATCHING_SUGGEST_THRESHOLD", raising=False)
    monkeypatch.delenv("MATCHING_CONFIG_PATH", raising=False)
    scoring._config_cache = None
    yield
    scoring._config_cache = None


@pytest.fixture
def matching_config():
    return DEFAULT_CONFIG


@pytest.fixture
def team_id():
    return uuid4()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Per-test SQLite database file.

    A file (not ``:memory:``) so the concurrent reverse pass can open several
    connections onto the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine):
    maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    previous = set_test_session_maker(maker)
    yield maker
    set_test_session_maker(previous)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_maker):
    """HTTP client bound to the app, using the test database."""
    from reconciler.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
