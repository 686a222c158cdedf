"""Database engine, session factory, and declarative base.

Every sweep opens its own short-lived session per contract through
`async_session`, so each read-modify-write works on the latest row.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from farmbid.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=20,
    max_overflow=10,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Yield a request-scoped session."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    """FastAPI dependency returning the session factory handed to sweeps."""
    return async_session


async def commit_versioned(db: AsyncSession, entity: str, identifier: str) -> None:
    """Commit, turning a failed optimistic version check into PersistenceConflict."""
    from farmbid.middleware.exceptions import PersistenceConflict  # deferred to avoid circular

    try:
        await db.commit()
    except StaleDataError as e:
        await db.rollback()
        raise PersistenceConflict(entity, identifier) from e
