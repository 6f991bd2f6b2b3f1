from collections.abc import Iterator
from contextlib import contextmanager

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import QueuePool, StaticPool

from filestore.config import DB_CONNECT_ARGS, DB_URL


def build_engine(url: str = DB_URL, connect_args: dict | None = None):
    """Create an engine for the file index.

    In-memory SQLite needs a single shared connection, everything else goes
    through a pooled engine that survives long-lived processes.
    """
    if connect_args is None:
        connect_args = DB_CONNECT_ARGS
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool, echo=False)
    return create_engine(
        url,
        connect_args=connect_args,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,
        echo=False,
    )


engine = build_engine()


def init_db(bind=None) -> None:
    # Tables register on the metadata at import time
    from filestore import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


session_scope = contextmanager(get_session)
