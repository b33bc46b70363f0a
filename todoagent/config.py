"""Runtime settings for todoagent."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path.home() / ".todoagent" / "todos.db"


class Settings(BaseSettings):
    """Settings loaded from TODOAGENT_* environment variables."""

    db_path: Path = DEFAULT_DB_PATH

    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = Field(default=1024, ge=1)
    model_timeout_s: float = Field(default=15.0, gt=0)

    max_iterations: int = Field(default=3, ge=1, le=5)
    run_deadline_s: float = Field(default=20.0, gt=0)
    finalize_timeout_s: float = Field(default=5.0, gt=0)
    registry_ttl_s: float = Field(default=60.0, ge=0)
    ready_timeout_s: float = Field(default=5.0, gt=0)

    host: str = "127.0.0.1"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="TODOAGENT_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
        protected_namespaces=(),
    )

    def resolved_api_key(self) -> str:
        return self.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
