"""Application settings using Pydantic Settings.

Configuration loaded from environment variables and .env file.
Per-operation policies may be given as JSON, e.g.
APIGUARD_OPERATION_POLICIES='{"getCatalogItem": {"requests_per_second": 2, "burst_capacity": 2}}'
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from apiguard.domain.entities import LedgerDefaults
from apiguard.domain.value_objects import OperationPolicy, PolicySet


class Settings(BaseSettings):
    """apiguard settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="APIGUARD_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # === Application ===
    app_name: str = "apiguard"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    events_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None

    # === Storage ===
    store_backend: Literal["memory", "redis", "sqlite"] = "memory"
    redis_url: SecretStr = SecretStr("redis://localhost:6379/0")
    sqlite_path: Path = Path("./apiguard.db")
    cache_namespace: str = "apiguard"

    # === Token Ledger ===
    ledger_initial_tokens: int = Field(default=200, ge=0)
    ledger_max_tokens: int = Field(default=500, ge=1)
    ledger_tokens_per_minute: float = Field(default=22.0, gt=0)
    ledger_cache_seconds: float = Field(default=30.0, ge=0)  # local view freshness
    ledger_poll_interval_seconds: float = Field(default=1.0, gt=0)

    # === Waiting ===
    max_wait_slice_seconds: float = Field(default=5.0, gt=0)
    max_quota_wait_seconds: float = Field(default=300.0, ge=0)

    # === Operation Policies ===
    default_policy: OperationPolicy = OperationPolicy()
    operation_policies: dict[str, OperationPolicy] = Field(default_factory=dict)

    @property
    def ledger_defaults(self) -> LedgerDefaults:
        return LedgerDefaults(
            initial_tokens=self.ledger_initial_tokens,
            max_tokens=self.ledger_max_tokens,
            tokens_per_minute=self.ledger_tokens_per_minute,
        )

    def policy_set(self) -> PolicySet:
        """Build the PolicySet shared by all resilience components."""
        return PolicySet(self.operation_policies, default=self.default_policy)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
