"""
Database engine, session and locking helpers.

All writes of one logical operation (a spec upload, a merge, the analysis of
one trace) run inside :func:`transaction`, which commits on success and rolls
back on any failure.
"""

import hashlib
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from apidrift.logger import get_logger
from apidrift.models import Base

# Get logger
logger = get_logger("database")


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    In-memory SQLite databases share a single connection so that every session
    sees the same data.

    Args:
        url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Engine instance
    """
    kwargs = {"echo": echo, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(engine)
    logger.debug(f"Database schema ready on {engine.url.render_as_string(hide_password=True)}")


def get_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


@contextmanager
def transaction(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Open a session and run the block inside one transaction.

    Yields:
        Session bound to the transaction
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _advisory_key(key: Tuple[str, str]) -> int:
    digest = hashlib.sha1(f"{key[0]}|{key[1]}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class EndpointLocks:
    """
    Serializes endpoint resolution per (host, method).

    In-process threads are serialized with one lock per key. On PostgreSQL a
    transaction-scoped advisory lock is taken as well so that separate worker
    processes are serialized too.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def transaction(self, session_factory: sessionmaker,
                    keys: Iterable[Tuple[str, str]]) -> Iterator[Session]:
        """
        Run a transaction while holding the locks for all keys.

        Locks are acquired in sorted order before the transaction starts and
        released only after it has committed or rolled back.

        Args:
            session_factory: Factory for the transaction's session
            keys: (host, method) pairs touched by the transaction

        Yields:
            Session bound to the transaction
        """
        ordered = sorted(set(keys))
        acquired = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            with transaction(session_factory) as session:
                if session.get_bind().dialect.name == "postgresql":
                    for key in ordered:
                        session.execute(
                            text("SELECT pg_advisory_xact_lock(:key)"),
                            {"key": _advisory_key(key)}
                        )
                yield session
        finally:
            for lock in reversed(acquired):
                lock.release()
