"""Environment-driven settings for repokit.

``RepoKitSettings`` carries the connection URL, the dialect override,
pool passthrough values, logging options and the batch defaults used by
:mod:`repokit.core.batch`.  Every field can be set from a ``REPOKIT_``
prefixed environment variable or a ``.env`` file.

Examples:
    >>> from repokit.core.settings import RepoKitSettings
    >>> s = RepoKitSettings(database_url="sqlite:///app.db")
    >>> s.param_budget
    16384

    $ REPOKIT_DATABASE_URL=mysql+pymysql://app@db/app repokit ping

Tags:
    settings, configuration, pydantic, environment, repokit
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RepoKitSettings(BaseSettings):
    """Settings shared by the database handle, the batch engine and the CLI.

    Fields
    ──────
    database_url       : SQLAlchemy URL of the target database
    dialect            : Dialect override (``starrocks`` on a MySQL URL, etc.)
    echo               : Echo SQL through SQLAlchemy's own logger
    pool_size, max_overflow, pool_timeout : Pool passthrough (ignored for SQLite)
    log_level          : Structlog log level
    log_json           : JSON logs; ``None`` auto-detects from the tty
    slow_query_seconds : Statements slower than this log at warning level
    param_budget       : Bound-parameter ceiling; ``None`` uses the dialect's
    batch_size         : Default rows per batch window
    """

    model_config = SettingsConfigDict(
        env_prefix="REPOKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Connection ───────────────────────────────────────────────
    database_url: str = "sqlite:///repokit.db"
    dialect: str | None = None
    echo: bool = False
    pool_size: int | None = None
    max_overflow: int | None = None
    pool_timeout: int | None = None

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None
    slow_query_seconds: float = Field(default=5.0, gt=0)

    # ── Batching ─────────────────────────────────────────────────
    param_budget: int | None = Field(default=None, gt=0)
    batch_size: int = Field(default=1000, gt=0)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


__all__ = ["RepoKitSettings"]
