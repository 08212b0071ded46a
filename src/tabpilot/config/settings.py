"""
config/settings.py — tabpilot Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - Every timing knob of the loop (capture interval, backoff, step delay,
    surface timeout) lives here so tests and deployments can tune them.
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found.
  - load_settings() respects the TABPILOT_CONFIG env var as a fallback
    when no explicit config_path argument is given.
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_CONFLICT_POLICIES = {"reject", "supersede"}
_VALID_IMAGE_FORMATS = {"jpeg", "png"}

DEFAULT_GEMINI_ENDPOINT = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-2.5-computer-use-preview-10-2025:generateContent"
)
DEFAULT_INSTRUCTION = (
    "Goal: {goal}\n\nRespond with ONLY Computer Use tool calls. No other text."
)


def _non_negative(name: str, v: int) -> int:
    if v < 0:
        raise ValueError(f"{name} must be >= 0")
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    max_steps_default: int = 10
    step_delay_ms: int = 800
    conflict_policy: str = "reject"

    @field_validator("max_steps_default")
    @classmethod
    def _positive_steps(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_steps_default must be >= 1")
        return v

    @field_validator("step_delay_ms")
    @classmethod
    def _delay(cls, v: int) -> int:
        return _non_negative("agent.step_delay_ms", v)

    @field_validator("conflict_policy")
    @classmethod
    def _valid_policy(cls, v: str) -> str:
        v = v.lower()
        if v not in _VALID_CONFLICT_POLICIES:
            raise ValueError(
                f"agent.conflict_policy must be one of "
                f"{sorted(_VALID_CONFLICT_POLICIES)}, got '{v}'"
            )
        return v


class CaptureConfig(BaseModel):
    """Observation throttle + payload ceiling."""
    min_interval_ms: int = 2500
    base_backoff_ms: int = 1000
    max_backoff_multiplier: int = 16
    max_observation_bytes: int = 100_000
    image_format: str = "jpeg"
    jpeg_quality: int = 15

    @field_validator("min_interval_ms", "base_backoff_ms")
    @classmethod
    def _non_negative_ms(cls, v: int) -> int:
        return _non_negative("capture timing", v)

    @field_validator("max_backoff_multiplier")
    @classmethod
    def _multiplier(cls, v: int) -> int:
        if v < 1:
            raise ValueError("capture.max_backoff_multiplier must be >= 1")
        return v

    @field_validator("max_observation_bytes")
    @classmethod
    def _ceiling(cls, v: int) -> int:
        if v < 1:
            raise ValueError("capture.max_observation_bytes must be >= 1")
        return v

    @field_validator("image_format")
    @classmethod
    def _format(cls, v: str) -> str:
        v = v.lower()
        if v not in _VALID_IMAGE_FORMATS:
            raise ValueError(
                f"capture.image_format must be one of {sorted(_VALID_IMAGE_FORMATS)}"
            )
        return v

    @field_validator("jpeg_quality")
    @classmethod
    def _quality(cls, v: int) -> int:
        if not (1 <= v <= 100):
            raise ValueError("capture.jpeg_quality must be between 1 and 100")
        return v


class ModelConfig(BaseModel):
    endpoint: str = DEFAULT_GEMINI_ENDPOINT
    environment: str = "ENVIRONMENT_BROWSER"
    request_timeout_seconds: float = 60.0
    instruction: str = DEFAULT_INSTRUCTION

    @field_validator("endpoint")
    @classmethod
    def _http_endpoint(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"model.endpoint must be an http(s) URL, got '{v}'")
        return v

    @field_validator("instruction")
    @classmethod
    def _has_goal_slot(cls, v: str) -> str:
        if "{goal}" not in v:
            raise ValueError("model.instruction must contain a '{goal}' placeholder")
        return v

    @field_validator("request_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("model.request_timeout_seconds must be > 0")
        return v


class ExecutorConfig(BaseModel):
    surface_timeout_ms: int = 10_000
    navigation_settle_ms: int = 2000
    default_url: str = "https://www.google.com"
    search_url_template: str = "https://www.google.com/search?q={}"

    @field_validator("surface_timeout_ms")
    @classmethod
    def _positive_surface_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("executor.surface_timeout_ms must be >= 1")
        return v

    @field_validator("navigation_settle_ms")
    @classmethod
    def _settle(cls, v: int) -> int:
        return _non_negative("executor.navigation_settle_ms", v)

    @field_validator("search_url_template")
    @classmethod
    def _has_query_slot(cls, v: str) -> str:
        if "{}" not in v:
            raise ValueError("executor.search_url_template must contain a '{}' placeholder")
        return v


class BrowserConfig(BaseModel):
    headless: bool = False
    start_url: str = "about:blank"
    viewport_width: int = 1280
    viewport_height: int = 800


class ArtifactsConfig(BaseModel):
    enabled: bool = True
    dir: str = "./data/runs"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {
    "agent", "capture", "model", "executor", "browser", "artifacts", "logging",
}


class Settings(BaseSettings):
    """
    tabpilot runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    gemini_api_key: Optional[str] = Field(default=None, alias="GEMINI_API_KEY")

    # -- Structured config (from config.yaml) --------------------------------
    agent: AgentConfig = Field(default_factory=AgentConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # config.yaml arrives as init kwargs; env and .env must override it.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("gemini_api_key", mode="before")
    @classmethod
    def _blank_key_is_none(cls, v: Any) -> Optional[str]:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def artifacts_dir(self) -> Path:
        return Path(self.artifacts.dir)

    def api_key(self) -> Optional[str]:
        """Credential lookup used by the decision-model client."""
        return self.gemini_api_key

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems they can't see.
        """
        errors: list[str] = []

        if not self.gemini_api_key:
            errors.append(
                "The decision model requires GEMINI_API_KEY to be set "
                "in your .env file or environment."
            )

        if self.capture.base_backoff_ms * self.capture.max_backoff_multiplier > 5 * 60 * 1000:
            errors.append(
                "capture.base_backoff_ms * capture.max_backoff_multiplier exceeds "
                "five minutes; a rate-limited run would stall for too long."
            )

        if self.executor.surface_timeout_ms < self.executor.navigation_settle_ms:
            errors.append(
                "executor.surface_timeout_ms is shorter than "
                "executor.navigation_settle_ms; commands would time out before "
                "a freshly loaded page settles."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\ntabpilot startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. TABPILOT_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("TABPILOT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use. Guarded by _singleton_lock against double-init.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(
                **{k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                   if k in _KNOWN_SECTIONS}
            )
        return _singleton
