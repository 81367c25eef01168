from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from postboard.cache import cache
from postboard.config import settings
from postboard.middleware import install_query_counter

# Module-level engine variable allows tests to override with a test engine.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

install_query_counter(engine)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def create_tables() -> None:
    """Create every table known to ``Base.metadata`` that does not exist yet."""
    # Model classes must be registered on the metadata first.
    import postboard.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def commit_session(session: AsyncSession) -> None:
    """Commit *session*, then drop cache entries its writes made stale."""
    await session.commit()
    await cache.after_commit(session)


async def rollback_session(session: AsyncSession) -> None:
    await session.rollback()
    cache.after_rollback(session)


async def get_db():
    async with async_session() as session:
        try:
            yield session
            await commit_session(session)
        except Exception:
            await rollback_session(session)
            raise
