"""Alembic environment; uses newsletter_intel config for the database URL."""
import os
import sys

# Add backend/ to path so newsletter_intel is importable
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, backend_dir)
os.chdir(backend_dir)

from logging.config import fileConfig
from alembic import context
from sqlalchemy import engine_from_config
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import NullPool

from newsletter_intel.config import settings
from newsletter_intel.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _sync_db_url() -> str:
    """
    Alembic runs migrations with a synchronous driver, while the app uses
    aiosqlite/asyncpg. Map async drivers back and force psycopg for Postgres.
    """
    url = make_url(settings.database_url)
    if url.drivername in ("postgresql", "postgresql+asyncpg"):
        url = url.set(drivername="postgresql+psycopg")
    elif url.drivername == "sqlite+aiosqlite":
        url = url.set(drivername="sqlite")
    # `str(URL)` redacts the password; Alembic needs the real one to connect.
    return url.render_as_string(hide_password=False)


# Override sqlalchemy.url from app settings (escape % for configparser)
config.set_main_option("sqlalchemy.url", _sync_db_url().replace("%", "%%"))

target_metadata = Base.metadata


def _connect_args(url: str) -> dict:
    parsed = make_url(url)
    if parsed.drivername.startswith("sqlite"):
        return {"check_same_thread": False}
    # Supavisor transaction mode (port 6543) does not support prepared statements.
    if parsed.port == 6543:
        return {"prepare_threshold": None}
    return {}


def run_migrations_offline():
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Run migrations in 'online' mode."""
    conf = config.get_section(config.config_ini_section, {}) or {}
    url = _sync_db_url()
    conf["sqlalchemy.url"] = url
    connectable = engine_from_config(
        conf,
        prefix="sqlalchemy.",
        poolclass=NullPool,
        connect_args=_connect_args(url),
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
