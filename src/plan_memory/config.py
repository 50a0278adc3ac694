"""Runtime configuration for plan memory storage and coordination."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from plan_memory.models import MemoryNamespace
from plan_memory.storage.common import sqlite_url

_SUPPORTED_BACKENDS = {"sqlite", "postgresql"}


@dataclass(slots=True)
class DatabaseSettings:
    """Durable store connection settings."""

    url: str = ""
    busy_timeout_ms: int = 5_000
    pool_size: int = 5
    pool_timeout_seconds: float = 30.0


@dataclass(slots=True)
class NamespaceSettings:
    """Scope under which every worker of one deployment shares memory."""

    project: str = "default"
    environment: str = "development"
    agent_type: str = "test-agent"

    def to_namespace(self, session_id: str | None = None) -> MemoryNamespace:
        return MemoryNamespace(
            project=self.project,
            environment=self.environment,
            agent_type=self.agent_type,
            session_id=session_id,
        )


@dataclass(slots=True)
class BatchingSettings:
    """Plan batching and result fan-out settings."""

    tools_per_batch: int = 5
    fanout_field: str = "results"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".plan_memory.db")
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    namespace: NamespaceSettings = field(default_factory=NamespaceSettings)
    batching: BatchingSettings = field(default_factory=BatchingSettings)
    force_durable_store: bool = False

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PLAN_MEMORY_DB_PATH", ".plan_memory.db")),
            database=DatabaseSettings(
                url=os.getenv("PLAN_MEMORY_DATABASE_URL", "").strip(),
                busy_timeout_ms=int(os.getenv("PLAN_MEMORY_BUSY_TIMEOUT_MS", "5000")),
                pool_size=int(os.getenv("PLAN_MEMORY_POOL_SIZE", "5")),
                pool_timeout_seconds=float(
                    os.getenv("PLAN_MEMORY_POOL_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
            namespace=NamespaceSettings(
                project=os.getenv("PLAN_MEMORY_PROJECT", "default"),
                environment=os.getenv("PLAN_MEMORY_ENVIRONMENT", "development"),
                agent_type=os.getenv("PLAN_MEMORY_AGENT_TYPE", "test-agent"),
            ),
            batching=BatchingSettings(
                tools_per_batch=int(os.getenv("PLAN_MEMORY_TOOLS_PER_BATCH", "5")),
                fanout_field=os.getenv("PLAN_MEMORY_FANOUT_FIELD", "results").strip(),
            ),
            force_durable_store=_env_bool("PLAN_MEMORY_FORCE_SHARED_MEMORY", default=False),
        )

    @property
    def database_url(self) -> str:
        """Explicit URL when configured, otherwise the local SQLite file."""

        return self.database.url or sqlite_url(self.db_path)

    def validate(self) -> None:
        """Raise configuration error for values the store cannot work with."""

        try:
            backend = make_url(self.database_url).get_backend_name()
        except ArgumentError as error:
            raise ValueError(
                f"Invalid PLAN_MEMORY_DATABASE_URL: {self.database.url!r}",
            ) from error
        if backend not in _SUPPORTED_BACKENDS:
            raise ValueError(
                "Unsupported PLAN_MEMORY_DATABASE_URL backend: "
                f"{backend!r}. Expected one of {sorted(_SUPPORTED_BACKENDS)}.",
            )
        if self.database.busy_timeout_ms <= 0:
            raise ValueError("PLAN_MEMORY_BUSY_TIMEOUT_MS must be > 0.")
        if self.database.pool_size <= 0:
            raise ValueError("PLAN_MEMORY_POOL_SIZE must be > 0.")
        if self.database.pool_timeout_seconds <= 0:
            raise ValueError("PLAN_MEMORY_POOL_TIMEOUT_SECONDS must be > 0.")
        if self.batching.tools_per_batch <= 0:
            raise ValueError("PLAN_MEMORY_TOOLS_PER_BATCH must be a positive integer.")
        if not self.batching.fanout_field:
            raise ValueError("PLAN_MEMORY_FANOUT_FIELD must not be empty.")
        for name, value in (
            ("PLAN_MEMORY_PROJECT", self.namespace.project),
            ("PLAN_MEMORY_ENVIRONMENT", self.namespace.environment),
            ("PLAN_MEMORY_AGENT_TYPE", self.namespace.agent_type),
        ):
            if not value.strip():
                raise ValueError(f"{name} must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
