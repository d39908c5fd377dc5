"""
core/database.py -- Async SQLAlchemy engine factory shared by every store.

All stores (auth/store.py, documents/store.py, audit/store.py) talk to one
authoritative database through SQLAlchemy Core on its asyncio extension. The
engine is created once in the API lifespan and handed to each store.

SQLite notes:
  - The aiosqlite driver is used (sqlite+aiosqlite:///path.db).
  - NullPool: each checkout opens a fresh connection. aiosqlite connections
    are bound to the event loop that opened them; pooling them would leak a
    connection across loops (TestClient portals, asyncio.run in fixtures).
  - In-memory URLs are not supported for the same reason -- every new
    connection would see a blank schema. Tests use a temporary file.

Layer rule: core/ is the kernel -- no imports from other packages.
"""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new SQLite connection.

    WAL lets readers proceed while a writer holds the lock. Set per-connection
    because SQLite PRAGMAs are not inherited by new connections.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_engine(db_url: str) -> AsyncEngine:
    """Build the AsyncEngine for db_url (sqlite+aiosqlite or postgresql+asyncpg)."""
    if db_url.startswith("sqlite"):
        engine = create_async_engine(db_url, poolclass=NullPool)
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
        return engine
    return create_async_engine(db_url, pool_pre_ping=True)
