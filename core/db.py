"""
core/db.py -- SQLAlchemy engine factory shared by every store.

SQLAlchemy provides a database-agnostic abstraction: swapping SQLite for
PostgreSQL is a connection string change, not a rewrite. SQLite gets two
adjustments here so every repository behaves the same:
  check_same_thread=False -- FastAPI runs sync handlers in a thread pool, so
                             a pooled connection may be used from any worker
  journal_mode=WAL        -- readers proceed while a writer holds the lock

Layer rule: core/ -- no imports from api/, auth/, or clinic/.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Set per-connection because SQLite PRAGMAs are not inherited by new pool connections."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
