from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from venuschat.config.logging import get_logger
from venuschat.config.settings import DatabaseSettings

logger = get_logger(__name__)

T = TypeVar("T")


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine.

    SQLite connections are shared with worker threads (all DB work runs via
    asyncio.to_thread); in-memory SQLite uses a single static connection.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            db_path = url.split("///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


class Database:
    """Engine + session factory, with a helper to run sync work off the event loop."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = sessionmaker(
            bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> Database:
        return cls(create_db_engine(settings.url, echo=settings.echo))

    def session(self) -> Session:
        return self.session_factory()

    def create_all(self) -> None:
        from venuschat.db.base import Base

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database schema is up to date")

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking storage function in a worker thread."""
        return await asyncio.to_thread(fn, *args)

    def dispose(self) -> None:
        self.engine.dispose()
