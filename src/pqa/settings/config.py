"""Configuration loader for PQA using Pydantic settings.

Config precedence (highest wins):
  1. CLI flags (where applicable)
  2. Environment variables (PQA_* with __ for nesting)
  3. settings.local.toml
  4. settings.<env>.toml
  5. settings.default.toml
"""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = Path(os.getenv("PQA_PROJECT_ROOT", _THIS_DIR.parents[2]))
CONFIG_DIR = PROJECT_ROOT / "config"

ENV_VAR_NAME = "PQA_ENV"
DEFAULT_ENV = "local"


def _resolve_env() -> str:
    return (os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()


def _load_toml(path: Path) -> dict[str, Any]:
    if path.is_file():
        with open(path, "rb") as f:
            return tomllib.load(f)
    return {}


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class AutomationSettings(BaseSettings):
    """Queue controller policy: delays, retries and error escalation."""

    model_config = SettingsConfigDict(env_prefix="PQA_AUTOMATION__")

    inter_prompt_delay_ms: int = 5_000
    retry_delay_ms: int = 10_000
    max_retries: int = 3
    enable_retries: bool = True
    pause_on_error: bool = False
    dispatch_timeout_ms: int = 120_000
    response_timeout_ms: int = 90_000
    honor_pause_after: bool = True
    ready_resume: bool = True

    @field_validator("max_retries")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v


class AgentSettings(BaseSettings):
    """Page agent timings for settling, locating and submitting."""

    model_config = SettingsConfigDict(env_prefix="PQA_AGENT__")

    locate_timeout_ms: int = 10_000
    locate_poll_ms: int = 200
    settle_max_attempts: int = 10
    settle_poll_ms: int = 500
    settle_delay_ms: int = 1_000
    focus_delay_ms: int = 300
    submit_delay_ms: int = 1_500
    scroll_settle_ms: int = 200
    click_effect_ms: int = 500
    click_timeout_ms: int = 5_000
    verify_submit: bool = True
    ready_delay_ms: int = 2_000


class DetectorSettings(BaseSettings):
    """Response completion detection thresholds."""

    model_config = SettingsConfigDict(env_prefix="PQA_DETECTOR__")

    poll_interval_ms: int = 1_000
    stable_samples: int = 3
    long_response_chars: int = 1_000
    long_stable_samples: int = 5
    min_elapsed_ms: int = 3_000
    long_min_elapsed_ms: int = 8_000
    min_text_length: int = 10


class BrowserSettings(BaseSettings):
    """Playwright browser settings."""

    model_config = SettingsConfigDict(env_prefix="PQA_BROWSER__")

    headless: bool = False
    timeout_ms: int = 30_000
    user_agent: str = ""
    user_data_dir: str = ""
    channel: str = ""
    viewport_width: int = 1280
    viewport_height: int = 900


class TargetSettings(BaseSettings):
    """Chat application the automation is pointed at."""

    model_config = SettingsConfigDict(env_prefix="PQA_TARGET__")

    url: str = ""
    allowed_hosts: list[str] = Field(default_factory=list)
    locator_file: str = ""


class StorageSettings(BaseSettings):
    """Checkpoint and result storage."""

    model_config = SettingsConfigDict(env_prefix="PQA_STORAGE__")

    backend: str = "sqlite"  # sqlite | memory
    sqlite_path: str = "data/pqa.db"


class APISettings(BaseSettings):
    """API server configuration."""

    model_config = SettingsConfigDict(env_prefix="PQA_API__")

    host: str = "127.0.0.1"
    port: int = 8100
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Root PQA settings with nested sections."""

    model_config = SettingsConfigDict(
        env_prefix="PQA_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    env: str = Field(default_factory=_resolve_env)
    project_root: Path = Field(default=PROJECT_ROOT)
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "text"  # text | json

    automation: AutomationSettings = Field(default_factory=AutomationSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    detector: DetectorSettings = Field(default_factory=DetectorSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    target: TargetSettings = Field(default_factory=TargetSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    api: APISettings = Field(default_factory=APISettings)

    @model_validator(mode="before")
    @classmethod
    def _merge_toml_files(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Layer TOML config files before env var overrides."""
        defaults = _load_toml(CONFIG_DIR / "settings.default.toml")
        env_name = (values.get("env") or os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()
        env_overrides = _load_toml(CONFIG_DIR / f"settings.{env_name}.toml")
        local_overrides = _load_toml(CONFIG_DIR / "settings.local.toml")

        # Merge: defaults < env-specific < local < explicit values
        merged: dict[str, Any] = {}
        for layer in (defaults, env_overrides, local_overrides, values):
            for key, val in layer.items():
                if isinstance(val, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **val}
                else:
                    merged[key] = val
        return merged

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Normalize relative paths against project_root."""
        root = self.project_root
        if not Path(self.storage.sqlite_path).is_absolute():
            self.storage.sqlite_path = str(root / self.storage.sqlite_path)
        if self.target.locator_file and not Path(self.target.locator_file).is_absolute():
            self.target.locator_file = str(root / self.target.locator_file)
        if self.browser.user_data_dir and not Path(self.browser.user_data_dir).is_absolute():
            self.browser.user_data_dir = str(root / self.browser.user_data_dir)
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton settings instance (cached)."""
    return Settings()
