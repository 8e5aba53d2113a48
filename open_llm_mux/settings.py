from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    mux_config_path: str = "mux.yaml"
    log_level: str = "INFO"
    mux_audit_log_enabled: bool = False
    mux_audit_log_path: str = "logs/mux_selections.jsonl"
    backend_timeout_seconds: float = 120.0
    backend_connect_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
