import socket
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import Settings, settings
from app.models.base import Base
from app.repositories.memory_grant_store import InMemoryGrantStore
from app.services.ledger_service import LedgerService
from app.services.pricing import (
    DEFAULT_MODELS,
    ModelCost,
    ModelDefinition,
    PricingTable,
)

# Use separate test database
TEST_DATABASE_URL = settings.database_url.replace(
    settings.database_name, f"{settings.database_name}_test"
)

# Consistent ids for predictable assertions
TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
CREATOR_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")
OTHER_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000099")

# Pinned clock
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

# Test-only model: base cost 10,000 credits in every bucket
TEST_MODEL_ID = "test-model"
TEST_MODEL = ModelDefinition(
    id=TEST_MODEL_ID,
    provider="openai",
    display_name="Test Model",
    input_type="text",
    output_type="text",
    cost=ModelCost(short=10_000, medium=10_000, long=10_000),
)
RETIRED_MODEL = ModelDefinition(
    id="retired-model",
    provider="openai",
    display_name="Retired Model",
    input_type="text",
    output_type="text",
    cost=ModelCost(short=100, medium=200, long=300),
    is_available=False,
)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections.

    Returns:
        True if PostgreSQL is reachable on port 5432, False otherwise.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("127.0.0.1", 5432))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available."""
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            "PostgreSQL not available on port 5432. "
            "Start database with: docker compose up -d"
        )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# =============================================================================
# Ledger Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Clock pinned to FIXED_NOW."""
    return FakeClock()


@pytest.fixture
def ledger_settings() -> Settings:
    """Settings with zero retry backoff so contention tests run fast."""
    return Settings(ledger_retry_backoff_seconds=0)


@pytest.fixture
def pricing() -> PricingTable:
    """Default catalog plus the test-only models."""
    return PricingTable((*DEFAULT_MODELS, TEST_MODEL, RETIRED_MODEL))


@pytest.fixture
def store() -> InMemoryGrantStore:
    """Empty in-memory grant store."""
    return InMemoryGrantStore()


@pytest.fixture
def ledger(
    store: InMemoryGrantStore,
    pricing: PricingTable,
    ledger_settings: Settings,
    clock: FakeClock,
) -> LedgerService:
    """Ledger service over the in-memory store."""
    return LedgerService(store, pricing, settings=ledger_settings, clock=clock)
