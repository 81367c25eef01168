"""
Test infrastructure for the postboard API.

Strategy
--------
- SQLite in-memory via aiosqlite, so no Postgres is needed in CI.
- StaticPool makes every session share the single in-memory connection;
  a second connection would see an empty database.
- The app's get_db dependency is overridden to use the test session factory.
- Tables are created before and dropped after each test.
- Redis is disabled by setting cache._redis = None; CacheManager treats
  that as a permanent miss, so the database path is always exercised.
- Settings are read at import time, so the environment is prepared before
  any postboard module is imported (cheap bcrypt rounds, no startup DDL).
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("CREATE_TABLES_ON_STARTUP", "false")
os.environ.setdefault("DEBUG", "false")

import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from postboard.cache import cache  # noqa: E402
from postboard.database import Base, commit_session, get_db, rollback_session  # noqa: E402
from postboard.main import app  # noqa: E402
from postboard.middleware import install_query_counter  # noqa: E402
import postboard.models  # noqa: E402,F401

# ---------------------------------------------------------------------------
# Test database engine — SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_query_counter(engine_test)

async_session_test = async_sessionmaker(
    engine_test,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Dependency override — replace production get_db with the test session factory
# ---------------------------------------------------------------------------

async def override_get_db():
    async with async_session_test() as session:
        try:
            yield session
            await commit_session(session)
        except Exception:
            await rollback_session(session)
            raise


app.dependency_overrides[get_db] = override_get_db


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    cache._redis = None
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """
    Yield a live AsyncSession for tests that call services directly or
    need to seed and inspect ORM state.
    """
    async with async_session_test() as session:
        yield session


@pytest_asyncio.fixture
async def async_client() -> AsyncClient:
    """Yield an httpx.AsyncClient wired to the FastAPI app via ASGITransport."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def make_user(async_client: AsyncClient):
    """
    Factory fixture: register a user, log in, and return
    ``(user_id, auth_headers)``.
    """

    async def _make(email: str, name: str = "Tester", password: str = "secret123"):
        resp = await async_client.post("/api/v1/users", json={
            "email": email,
            "name": name,
            "password": password,
        })
        assert resp.status_code == 201, resp.text
        user_id = resp.json()["id"]

        resp = await async_client.post("/api/v1/auth/login", json={
            "email": email,
            "password": password,
        })
        assert resp.status_code == 200, resp.text
        token = resp.json()["token"]
        return user_id, {"Authorization": f"Bearer {token}"}

    return _make
