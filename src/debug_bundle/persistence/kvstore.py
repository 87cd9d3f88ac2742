"""SQLite key-value store, partitioned into key spaces."""

from __future__ import annotations

import datetime as dt
import logging
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import DateTime, LargeBinary, MetaData, String, create_engine, delete
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

LOGGER = logging.getLogger("debug_bundle.persistence")

metadata_obj = MetaData()


class Base(DeclarativeBase):
    metadata = metadata_obj


class KeySpace(str, Enum):
    DEBUG_BUNDLE = "debug_bundle"


class KVEntry(Base):
    __tablename__ = "kvstore"

    key_space: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: dt.datetime.now(dt.timezone.utc),
        onupdate=lambda: dt.datetime.now(dt.timezone.utc),
    )


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker[Session]:
    """Create a SQLAlchemy session factory, creating the schema if needed."""

    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        # one shared connection so worker threads see the same in-memory database
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif database_url.startswith("sqlite"):
        engine = create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(database_url, echo=echo)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False, class_=Session)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class KVStore:
    """
    Durable byte values addressed by ``(key_space, key)``.

    Calls are synchronous; async callers dispatch them with
    :func:`asyncio.to_thread`.
    """

    def __init__(self, database_url: str = "sqlite://", echo: bool = False) -> None:
        self._session_factory = create_session_factory(database_url, echo=echo)

    @classmethod
    def from_path(cls, db_path: Path) -> "KVStore":
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return cls(f"sqlite:///{db_path}")

    def put(self, key_space: KeySpace, key: str, value: bytes) -> None:
        with session_scope(self._session_factory) as session:
            session.merge(KVEntry(key_space=KeySpace(key_space).value, key=key, value=bytes(value)))
        LOGGER.debug("Stored %d bytes under %s/%s", len(value), KeySpace(key_space).value, key)

    def get(self, key_space: KeySpace, key: str) -> Optional[bytes]:
        with session_scope(self._session_factory) as session:
            entry = session.get(KVEntry, (KeySpace(key_space).value, key))
            return bytes(entry.value) if entry is not None else None

    def remove(self, key_space: KeySpace, key: str) -> bool:
        """Delete the entry; returns ``False`` if it was not present."""
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(KVEntry).where(KVEntry.key_space == KeySpace(key_space).value, KVEntry.key == key)
            )
            removed = bool(result.rowcount)
        LOGGER.debug("Removed %s/%s (present=%s)", KeySpace(key_space).value, key, removed)
        return removed


__all__ = ["Base", "KVEntry", "KVStore", "KeySpace", "create_session_factory", "session_scope"]
