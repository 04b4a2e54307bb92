import logging
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from core.config import DATABASE_URL, STORE_POOL_SIZE
from storage.chunk_store import ChunkStore

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_store: Optional[ChunkStore] = None


def init_engine(url: str = DATABASE_URL, pool_size: int = STORE_POOL_SIZE) -> ChunkStore:
    """
    Create the process-wide engine (and its connection pool), create tables
    and build the shared store. Called once at application startup.
    """
    global _engine, _store
    if _store is not None:
        return _store

    connect_args = {}
    if url.startswith("sqlite"):
        # store calls run in threadpool workers
        connect_args["check_same_thread"] = False

    kwargs = {"connect_args": connect_args, "pool_pre_ping": True}
    if url != "sqlite://" and ":memory:" not in url:
        # in-memory sqlite uses a single-connection pool without sizing
        kwargs["pool_size"] = pool_size

    _engine = create_engine(url, **kwargs)
    SQLModel.metadata.create_all(_engine)
    _store = ChunkStore(_engine)
    logger.info("Segment store ready (%s)", _engine.url.render_as_string(hide_password=True))
    return _store


def dispose_engine() -> None:
    """Drain the connection pool. Called at application shutdown."""
    global _engine, _store
    if _engine is not None:
        _engine.dispose()
        logger.info("Segment store connections released")
    _engine = None
    _store = None


def get_store() -> ChunkStore:
    if _store is None:
        raise RuntimeError("Segment store is not initialised; call init_engine() first")
    return _store
