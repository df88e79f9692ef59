from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DEFAULT_HOME_DIR = Path.home() / ".pool-router"
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "router.db"

DEFAULT_SUPPORTED_PLATFORMS = ("claude", "claude-console", "gemini", "openai", "thor")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="POOL_ROUTER_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = f"sqlite+aiosqlite:///{DEFAULT_DB_PATH}"
    database_pool_size: int = Field(default=15, gt=0)
    database_max_overflow: int = Field(default=10, ge=0)
    database_pool_timeout_seconds: float = Field(default=30.0, gt=0)
    supported_platforms: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_SUPPORTED_PLATFORMS)
    )
    default_selection_strategy: str = "priority"
    # Quarantine applied by explicit mark-unhealthy calls and by group failure handling.
    quarantine_seconds: int = Field(default=300, gt=0)
    group_failure_threshold: int = Field(default=3, gt=0)
    sticky_sessions_enabled: bool = True
    sticky_sessions_memory_maxsize: int = Field(default=10_000, gt=0)
    sticky_sessions_memory_ttl_seconds: float = Field(default=60 * 60, gt=0)
    group_health_check_enabled: bool = True
    group_health_check_poll_seconds: float = Field(default=10.0, gt=0)
    access_log_enabled: bool = False
    debug_logging: bool = False
    startup_log_config: bool = False

    @field_validator("database_url")
    @classmethod
    def _expand_database_url(cls, value: str) -> str:
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if value.startswith(prefix):
                path = value[len(prefix) :]
                if path.startswith("~"):
                    return f"{prefix}{Path(path).expanduser()}"
        return value

    @field_validator("supported_platforms", mode="before")
    @classmethod
    def _normalize_supported_platforms(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            entries = [entry.strip().lower() for entry in value.split(",")]
            return [entry for entry in entries if entry]
        if isinstance(value, (list, tuple)):
            normalized: list[str] = []
            for entry in value:
                if isinstance(entry, str):
                    platform = entry.strip().lower()
                    if platform:
                        normalized.append(platform)
            return normalized
        raise TypeError("supported_platforms must be a list or comma-separated string")

    @field_validator("default_selection_strategy")
    @classmethod
    def _normalize_default_strategy(cls, value: str) -> str:
        return value.strip().lower() or "priority"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
