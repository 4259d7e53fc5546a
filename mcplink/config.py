from __future__ import annotations

import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcplink import __version__


class Settings(BaseSettings):
    database_url: str | None = None
    data_dir: str = "data"
    log_level: str = "info"

    # Base64 AES-256 key; a throwaway key is generated when unset.
    encryption_key: str | None = None

    request_timeout_seconds: float = Field(default=20.0, gt=0)
    test_timeout_seconds: float = Field(default=10.0, gt=0)
    credential_header: str = "X-API-Key"
    mcp_endpoint_path: str = "/mcp"
    client_name: str = "mcplink"
    client_version: str = __version__

    retry_max_attempts: int = Field(default=5, ge=0)
    retry_initial_delay_seconds: float = Field(default=5.0, gt=0)
    retry_max_delay_seconds: float = Field(default=300.0, gt=0)
    scheduler_workers: int = Field(default=2, ge=2)
    # How often a supervising process re-reads the active record; 0 disables.
    registry_poll_interval_seconds: float = Field(default=5.0, ge=0)

    capability_cache_ttl_seconds: float = Field(default=30.0, ge=0)
    capability_cache_empty_ttl_seconds: float = Field(default=2.0, ge=0)
    cache_warmup_delay_seconds: float = Field(default=5.0, ge=0)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{os.path.join(self.data_dir, 'db', 'mcplink.db')}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
