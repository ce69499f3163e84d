# database.py
# Establishes connection to the SQL store (Postgres in production, SQLite for local runs) and ORM setup.

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

SQLALCHEMY_DATABASE_URL = settings.DATABASE_URL

def get_db_url():
    """Get the database URL for use in migration scripts."""
    return settings.DATABASE_URL

def get_alembic_db_url():
    """Get the synchronous database URL for Alembic migrations."""
    return settings.ALEMBIC_DATABASE_URL


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    NullPool: no pooling, one connection per session. Concurrent sessions never
    share a connection, so each one gets its own transaction on the store.
    """
    connect_args = {}
    if url.startswith("postgresql+asyncpg"):
        connect_args = {
            "timeout": 30,
            "server_settings": {"application_name": "investment_engine"},
        }
    elif url.startswith("sqlite"):
        # Writers queue on the database lock instead of failing immediately
        connect_args = {"timeout": 30}

    return create_async_engine(
        url,
        echo=echo,
        poolclass=NullPool,
        connect_args=connect_args,
    )


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False
    )


engine = build_engine(SQLALCHEMY_DATABASE_URL, echo=settings.DATABASE_ECHO)

SessionLocal = build_sessionmaker(engine)

Base = declarative_base()


async def create_db_and_tables(bind: AsyncEngine = engine) -> None:
    """Create all tables known to the metadata (local runs and tests; production uses Alembic)."""
    import models  # noqa: F401  registers the tables on Base.metadata

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
