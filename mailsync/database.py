from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from mailsync.config import settings

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    """FastAPI dependency yielding a database session"""
    async with AsyncSessionLocal() as session:
        yield session


def create_worker_sessionmaker():
    """Session factory for Celery workers.

    Each task runs its own event loop through ``asyncio.run``, so pooled
    connections cannot be shared between tasks.
    """
    worker_engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    return worker_engine, async_sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False)
