"""Alembic environment; uses mailsift config for database URL."""
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import NullPool

from mailsift.config import settings
from mailsift.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _sync_db_url() -> str:
    """
    Alembic runs migrations with a synchronous driver.
    A plain `postgresql://...` URL gets psycopg.
    """
    url = make_url(settings.database_url)
    if url.drivername == "postgresql":
        url = url.set(drivername="postgresql+psycopg")
    # `str(URL)` redacts the password; Alembic needs the real one.
    return url.render_as_string(hide_password=False)


# Override sqlalchemy.url from app settings (escape % for configparser)
config.set_main_option("sqlalchemy.url", _sync_db_url().replace("%", "%%"))

target_metadata = Base.metadata

connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}


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
    conf["sqlalchemy.url"] = _sync_db_url()
    connectable = engine_from_config(
        conf,
        prefix="sqlalchemy.",
        poolclass=NullPool,
        connect_args=connect_args,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
