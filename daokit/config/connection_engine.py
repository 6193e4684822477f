"""
Connection Engine (SQLAlchemy)

Purpose
-------
Centralizes database connectivity for the DAO engine:
- Builds a SQLAlchemy connection URL from environment-backed settings.
- Creates the Engine (connection pool + SQL execution entry point).
- Defines the `ConnectionProvider` capability the DAO engine depends on.

Notes
-----
- Uses `URL.create(...)` to avoid hardcoding credentials and to keep configuration
  environment-driven (e.g., via `.env`, container secrets, or deployment vars).
- The DAO engine never builds a pool itself. It only calls `acquire()` and
  `release()` on whatever provider it is given; `EngineConnectionProvider`
  is the implementation backed by a SQLAlchemy Engine.
- A connection handle is a SQLAlchemy `Connection`.
"""

from typing import Protocol, runtime_checkable

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Connection, Engine

from daokit.config.config import Settings, settings as default_settings


@runtime_checkable
class ConnectionProvider(Protocol):
    """Capability to lend and take back connections."""

    def acquire(self) -> Connection:
        ...

    def release(self, connection: Connection) -> None:
        ...


class EngineConnectionProvider:
    """
    `ConnectionProvider` backed by a SQLAlchemy Engine and its pool.

    Parameters
    ----------
    engine : Engine
        Engine whose pool supplies the connections.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def acquire(self) -> Connection:
        return self.engine.connect()

    def release(self, connection: Connection) -> None:
        # Returning to the pool rolls back anything left open.
        connection.close()

    @property
    def dialect(self):
        return self.engine.dialect


def build_connection_url(config: Settings = default_settings) -> URL:
    """
    Construct the SQLAlchemy connection URL using values from Settings.
    This ensures credentials and connection details are loaded securely
    from environment variables or a `.env` file.
    """
    return URL.create(
        drivername=config.DB_DRIVER_NAME,   # e.g., "postgresql+psycopg2", "sqlite"
        username=config.DB_USERNAME,        # Database username
        password=config.DB_PASSWORD,        # Database password
        host=config.DB_HOST,                # Hostname or IP of the DB server
        port=config.DB_PORT,
        database=config.DB_DATABASE_NAME,   # Name of the database (file path for SQLite)
    )


def create_connection_engine(config: Settings = default_settings, **engine_options) -> Engine:
    """
    Engine object: core interface to the database.
    Responsible for managing connections, executing SQL, and pooling.

    Parameters
    ----------
    config : Settings
        Connection and pool settings.
    **engine_options
        Extra keyword arguments forwarded to `sqlalchemy.create_engine`.
    """
    url = build_connection_url(config)
    options = {"pool_pre_ping": config.DB_POOL_PRE_PING}
    if not url.get_backend_name() == "sqlite":
        options["pool_size"] = config.DB_POOL_SIZE
    options.update(engine_options)
    return create_engine(url, **options)
