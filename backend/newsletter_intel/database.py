"""Database engine and sessions.

The pipeline, the API and the Celery workers all run on asyncio, so there is a
single AsyncSession factory (aiosqlite locally and in tests, asyncpg on Postgres).
Alembic keeps its own synchronous connection (see alembic/env.py).
"""

from __future__ import annotations

import ssl
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _is_supabase_host(url: URL) -> bool:
    host = (url.host or "").lower()
    return host.endswith(".supabase.co") or host.endswith(".supabase.com") or "supabase" in host


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


def _without_query_param(url: URL, key: str) -> URL:
    """Return a copy of URL without a specific query parameter."""
    q = dict(url.query)
    if key not in q:
        return url
    q.pop(key, None)
    return url.set(query=q)


def _resolve_backend_path(maybe_path: str) -> str:
    p = Path(maybe_path)
    if p.is_absolute():
        return str(p)
    # backend/newsletter_intel/database.py -> backend/
    backend_dir = Path(__file__).resolve().parents[1]
    return str((backend_dir / p).resolve())


def async_url_for(database_url: str) -> URL:
    """Map a plain sqlite:// or postgresql:// URL onto its asyncio driver."""
    url = make_url(database_url)
    if url.drivername == "sqlite":
        url = _with_driver(url, "sqlite+aiosqlite")
    elif url.drivername == "postgresql":
        url = _with_driver(url, "postgresql+asyncpg")
    return url


def _connect_args_for(url: URL) -> dict:
    if _is_sqlite(url):
        timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
        return {"check_same_thread": False, "timeout": timeout_s}

    connect_args: dict = {}
    # Supabase requires SSL; asyncpg uses an SSLContext via connect_args["ssl"].
    if _is_supabase_host(url):
        cafile = settings.supabase_ssl_ca_file
        if cafile:
            ctx = ssl.create_default_context(cafile=_resolve_backend_path(cafile))
            # Some CA bundles are rejected under strict X.509 rules; keep hostname + chain checks.
            strict_flag = getattr(ssl, "VERIFY_X509_STRICT", None)
            if strict_flag is not None:
                ctx.verify_flags &= ~strict_flag
            connect_args["ssl"] = ctx
        else:
            connect_args["ssl"] = ssl.create_default_context()
    # Supavisor transaction mode does not support prepared statements.
    if url.port == 6543:
        connect_args["statement_cache_size"] = 0
    return connect_args


def create_engine_for(database_url: str) -> AsyncEngine:
    url = async_url_for(database_url)
    kwargs: dict = {
        "pool_pre_ping": True,
        "connect_args": _connect_args_for(url),
    }
    if _is_sqlite(url):
        engine = create_async_engine(url, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            """WAL + busy_timeout so the lock row and email updates tolerate a second writer."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

        return engine

    # asyncpg doesn't support libpq-style URL params like `sslmode=require`.
    url = _without_query_param(url, "sslmode")
    kwargs.update(
        {
            "pool_size": max(1, settings.db_pool_size),
            "max_overflow": max(0, settings.db_max_overflow),
            "pool_timeout": max(1, settings.db_pool_timeout_s),
            "pool_recycle": max(0, settings.db_pool_recycle_s),
        }
    )
    return create_async_engine(url, **kwargs)


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async_engine = create_engine_for(settings.database_url)
AsyncSessionLocal = session_factory_for(async_engine)


async def init_db(engine: AsyncEngine = async_engine) -> None:
    """
    Create tables on SQLite (local dev, tests).

    We avoid implicit `create_all()` on Postgres; schema should be managed via Alembic.
    """
    if not _is_sqlite(engine.url):
        return
    from .models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession."""
    async with AsyncSessionLocal() as session:
        yield session
