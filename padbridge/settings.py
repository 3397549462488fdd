"""Centralised process settings for padbridge, loaded from env / .env."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PadBridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PADBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- general ---
    app_name: str = "padbridge"
    env: str = "dev"
    debug: bool = False
    log_level: str = "INFO"

    # --- HTTP (webhook receiver) ---
    host: str = "0.0.0.0"
    port: int = 19001

    # --- gateway callback base (used when channels config has no webhookBaseUrl) ---
    gateway_url: str = ""

    # --- file-system paths ---
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".padbridge")
    config_path: Path | None = None


@lru_cache
def get_settings() -> PadBridgeSettings:
    s = PadBridgeSettings()
    s.state_dir.mkdir(parents=True, exist_ok=True)
    return s
