"""Runtime configuration.

Values come from environment variables prefixed `VACANCY_SYNC_` or a local
`.env` file, e.g. `VACANCY_SYNC_RETRY_MAX=5`.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VACANCY_SYNC_",
        env_file=".env",
        extra="ignore",
    )

    # HTTP
    http_timeout_s: float = Field(default=60.0, gt=0)
    retry_max: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_ms: int = Field(default=30000, ge=0)
    rate_limit_delay_ms: int = Field(default=200, ge=0)
    max_pages: int = Field(default=500, gt=0)
    cache_enabled: bool = False
    cache_ttl_s: int = Field(default=300, ge=0)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_retention_days: int = Field(default=30, ge=1)

    # Storage
    data_dir: str = "data"
    provider_configs_file: Optional[str] = None

    # Reconciliation
    retention_days: int = Field(default=7, ge=0)

    # Transform sandbox
    transform_max_steps: int = Field(default=10000, gt=0)
    transform_max_code_chars: int = Field(default=20000, gt=0)
    transform_timeout_s: float = Field(default=2.0, gt=0)
    # Address space the transform worker may grow by; 0 disables the cap.
    transform_max_memory_mb: int = Field(default=256, ge=0)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def load_provider_configs(self) -> Dict[str, Dict[str, Any]]:
        """Read the provider id -> raw config JSON blob, if one is configured."""
        if not self.provider_configs_file:
            return {}
        path = Path(self.provider_configs_file).expanduser()
        if not path.exists():
            return {}
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a JSON object keyed by provider id")
        return data


@lru_cache
def get_settings() -> Settings:
    return Settings()
