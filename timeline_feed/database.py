"""
Async SQLAlchemy engine + session factory for TiDB (MySQL-protocol).

TiDB is wire-compatible with MySQL 5.7, so we use the aiomysql driver.
The engine is built by the composition root (API lifespan or fan-out worker)
and disposed at shutdown; nothing here connects at import time.
"""
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from timeline_feed.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def create_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    options = {"pool_pre_ping": True, "pool_size": 20, "max_overflow": 10}
    options.update(kwargs)
    engine = create_async_engine(url or settings.tidb_url, echo=False, **options)
    logger.info("Database engine created for %s:%s", settings.tidb_host, settings.tidb_port)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
