"""
Test infrastructure for the booking ledger.

Strategy
--------
- SQLite in-memory via aiosqlite eliminates the need for a running Postgres
  instance in CI, keeping the suite fast and self-contained.
- StaticPool forces all async tasks to share the same in-memory database
  connection, which is required because SQLite in-memory databases are
  connection-scoped; a new connection would see an empty database.
- Both ``get_db`` (request sessions) and ``get_session_factory`` (atomic
  units of the ledger core) are overridden so every test-time request uses
  the test engine rather than the production one.
- Because every session shares one connection, balances are asserted by
  reading them through a fresh session (``read_balance``) instead of
  trusting objects loaded before an atomic unit ran.
- All tables are created fresh before each test and dropped after, giving
  each test a clean isolated state without needing transactions or truncation.
- The Redis cache is disabled by setting cache._redis = None; the CacheManager
  already handles a None _redis gracefully (no-op reads and writes), so tests
  exercise real service logic without any Redis infrastructure.
"""
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from marketplace.atomic import TransactionRunner
from marketplace.cache import cache
from marketplace.config import settings
from marketplace.database import Base, get_db, get_session_factory
from marketplace.main import app
from marketplace.middleware import install_query_counter
from marketplace.models import LedgerEntry, Service, User, UserRole
from marketplace.security import create_access_token, get_password_hash
from marketplace.services.booking_manager import BookingManager
from marketplace.services.transfer_engine import TransferEngine

# ---------------------------------------------------------------------------
# Test database engine: SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Minimum bcrypt cost keeps hashing out of the test runtime.
settings.BCRYPT_ROUNDS = 4
TEST_PASSWORD_HASH = get_password_hash("correct-horse-battery")

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Register the per-request SQL query counter on the test engine.
install_query_counter(engine_test)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Dependency overrides: point the app at the test session factory
# ---------------------------------------------------------------------------

async def override_get_db():
    async with async_session_test() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def override_get_session_factory():
    return async_session_test


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_session_factory] = override_get_session_factory


# ---------------------------------------------------------------------------
# Read helpers (fresh session per call)
# ---------------------------------------------------------------------------

class CommittedState:
    """Reads committed state through a new session on every call."""

    async def balance(self, user_id: int) -> Decimal:
        async with async_session_test() as session:
            q = select(User.balance).where(User.id == user_id)
            return (await session.execute(q)).scalar_one()

    async def count(self, model, *where) -> int:
        async with async_session_test() as session:
            q = select(func.count()).select_from(model).where(*where)
            return (await session.execute(q)).scalar_one()

    async def entries(self, account_id: int | None = None) -> list[LedgerEntry]:
        async with async_session_test() as session:
            q = select(LedgerEntry).order_by(LedgerEntry.id)
            if account_id is not None:
                q = q.where(LedgerEntry.account_id == account_id)
            return list((await session.execute(q)).scalars().all())


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """
    Yield a live AsyncSession for tests that need to interact with the
    database directly (e.g. seeding data, asserting ORM state).
    """
    async with async_session_test() as session:
        yield session


@pytest_asyncio.fixture
async def async_client() -> AsyncClient:
    """
    Yield an httpx.AsyncClient wired to the FastAPI app via ASGITransport.

    Redis is disabled by setting cache._redis = None before each request so
    that tests are deterministic and do not depend on external infrastructure.
    """
    cache._redis = None
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def runner() -> TransactionRunner:
    return TransactionRunner(async_session_test)


@pytest.fixture
def transfers(runner: TransactionRunner) -> TransferEngine:
    return TransferEngine(runner)


@pytest.fixture
def manager(runner: TransactionRunner, transfers: TransferEngine) -> BookingManager:
    return BookingManager(runner, transfers)


@pytest.fixture
def make_user():
    """Factory committing a user with an opening balance in its own session."""
    counter = {"n": 0}

    async def _make(
        role: UserRole = UserRole.CLIENT,
        balance: str = "0.00",
        full_name: str | None = None,
        is_active: bool = True,
    ) -> User:
        counter["n"] += 1
        n = counter["n"]
        async with async_session_test() as session:
            user = User(
                full_name=full_name or f"{role.value.title()} {n}",
                email=f"{role.value}{n}@example.com",
                hashed_password=TEST_PASSWORD_HASH,
                role=role,
                balance=Decimal(balance),
                is_active=is_active,
            )
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
def make_service():
    """Factory committing a catalog service for a provider."""

    async def _make(
        provider: User, price: str = "40.00", name: str = "Haircut", is_active: bool = True
    ) -> Service:
        async with async_session_test() as session:
            service = Service(
                name=name,
                description=f"{name} description",
                price=Decimal(price),
                provider_id=provider.id,
                is_active=is_active,
            )
            session.add(service)
            await session.commit()
            return service

    return _make


@pytest.fixture
def committed() -> CommittedState:
    return CommittedState()


@pytest.fixture
def auth():
    """Build a bearer Authorization header for a user."""
    return auth_headers


@pytest.fixture
def session_factory():
    return async_session_test
