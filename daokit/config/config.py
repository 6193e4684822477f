"""
Configuration: Pydantic v2 Settings (env / .env)
=================================================

Purpose
-------
Centralized, strongly-typed configuration for the DAO engine using:
- Pydantic v2 `BaseSettings` for environment-driven values
- `pydantic-settings` v2 for `.env` loading and model config

Load Order & Behavior
---------------------
- Values are read from the environment; if not present, `.env` is used.
- Every field has a default, so importing the package never fails.
- `extra="ignore"`: unknown env vars are ignored (not an error).

Usage
-----
from daokit.config.config import Settings, settings

# Process-wide defaults
batch_size = settings.BATCH_SIZE

# Explicit settings for one engine (preferred; nothing reads the global then)
engine_settings = Settings(BATCH_SIZE=500, SQL_LOG_ENABLED=True)

Security
--------
- Never commit secrets or the `.env` file to source control.
- Prefer runtime environment variables in production (K8s/Secrets Manager/etc.).
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from daokit.core.sql_builder import ParameterStyle
from daokit.entities.naming import NamingPolicy


class Settings(BaseSettings):
    """
    DAO engine configuration loaded from environment variables or a `.env`
    file. Provides strongly typed access to connection and tuning values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DB_DRIVER_NAME: str = Field("sqlite", description="SQLAlchemy driver name (e.g., `postgresql+psycopg2`, `sqlite`).")
    DB_USERNAME: Optional[str] = Field(None, description="Database username credential.")
    DB_PASSWORD: Optional[str] = Field(None, description="Database password credential.")
    DB_HOST: Optional[str] = Field(None, description="Hostname or IP address of the database server.")
    DB_PORT: Optional[int] = Field(None, description="Port of the database server.")
    DB_DATABASE_NAME: Optional[str] = Field(None, description="Database name, or the file path for SQLite.")
    DB_POOL_SIZE: int = Field(5, ge=1, description="Connections kept open by the SQLAlchemy pool.")
    DB_POOL_PRE_PING: bool = Field(True, description="Test pooled connections before handing them out.")

    BATCH_SIZE: int = Field(200, ge=1, description="Default chunk size for batch operations.")
    JOIN_BATCH_SIZE: int = Field(1000, ge=1, description="Maximum keys per secondary IN query of the join loader.")
    MAX_BIND_PARAMETERS: int = Field(
        32766, ge=1, description="Most bind parameters one generated multi-row INSERT may carry."
    )
    CACHE_CAPACITY: int = Field(1000, ge=1, description="Entries kept by a DAO cache before LRU eviction.")
    CACHE_EVICT_DELAY_SECONDS: float = Field(3.0, ge=0, description="Delay between a mutating call and cache invalidation.")
    QUERY_TIMEOUT_SECONDS: Optional[float] = Field(None, gt=0, description="Default statement timeout; unset means none.")
    SQL_LOG_ENABLED: bool = Field(False, description="Log every statement at DEBUG level.")
    SLOW_SQL_THRESHOLD_MS: int = Field(1000, ge=0, description="Statements slower than this are logged as warnings.")
    NAMING_POLICY: NamingPolicy = Field(
        NamingPolicy.UPPER_CASE_WITH_UNDERSCORE, description="Property-to-column naming policy."
    )
    PARAMETER_STYLE: ParameterStyle = Field(ParameterStyle.POSITIONAL, description="Placeholder style of built SQL.")


# Default instance for callers that do not pass their own Settings
settings = Settings()
"""Defines a Settings object built from the environment and the .env file"""
