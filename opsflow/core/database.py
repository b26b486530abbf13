import os
from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from opsflow.core.config import settings

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    settings.DATABASE_URL
)

DATABASE_SCHEMA = os.getenv("DATABASE_SCHEMA", settings.DATABASE_SCHEMA) or None

engine = create_async_engine(DATABASE_URL, echo=False)
AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

Base = declarative_base(metadata=MetaData(schema=DATABASE_SCHEMA))


async def ensure_schema(conn) -> None:
    """Create the service-specific schema if it does not exist (idempotent)."""
    if DATABASE_SCHEMA and conn.dialect.name == "postgresql":
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DATABASE_SCHEMA}"))


async def init_database(bind=None) -> None:
    # model modules register their tables on Base.metadata at import time
    import opsflow.models.base_models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await ensure_schema(conn)
        await conn.run_sync(Base.metadata.create_all)
