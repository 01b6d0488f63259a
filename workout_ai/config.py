"""
Centralized configuration for the AI orchestration layer.

All settings are loaded from environment variables with sensible defaults.
Pydantic Settings provides validation and type coercion. Model price and
context tables can be overridden from config/models.yaml.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load .env then .env.local (so .env.local overrides).
_repo_root = Path(__file__).resolve().parent.parent
load_dotenv(_repo_root / ".env", override=False)
_env_local = _repo_root / ".env.local"
if _env_local.exists():
    load_dotenv(_env_local, override=True)


class LLMConfig(BaseSettings):
    """Provider API keys and generation params."""

    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    google_api_key: str = Field(default="", alias="GOOGLE_API_KEY")

    default_model: str = Field(default="gpt-4o-mini", alias="AI_DEFAULT_MODEL")
    temperature: float = Field(default=0.7, alias="AI_TEMPERATURE")
    max_tokens: int = Field(default=4096, alias="AI_MAX_TOKENS")
    request_timeout: float = Field(default=60.0, alias="AI_REQUEST_TIMEOUT")


class RetrySettings(BaseSettings):
    """Retry / fallback tuning (see workout_ai.retry)."""

    max_retries: int = Field(default=3, alias="AI_MAX_RETRIES")
    base_delay_ms: float = Field(default=1000, alias="AI_BASE_DELAY_MS")
    max_delay_ms: float = Field(default=30000, alias="AI_MAX_DELAY_MS")
    exponential_base: float = 2.0
    jitter_ratio: float = 0.25
    # Comma separated; empty means the built-in order
    fallback_models: str = Field(default="", alias="AI_FALLBACK_MODELS")

    @property
    def fallback_order(self) -> tuple[str, ...]:
        return tuple(m.strip() for m in self.fallback_models.split(",") if m.strip())


class BudgetSettings(BaseSettings):
    """Default per-request budget for workout-plan generation."""

    max_input_tokens: int = Field(default=8000, alias="AI_MAX_INPUT_TOKENS")
    max_output_tokens: int = Field(default=4000, alias="AI_MAX_OUTPUT_TOKENS")
    max_total_tokens: int = Field(default=12000, alias="AI_MAX_TOTAL_TOKENS")
    max_cost_usd: float = Field(default=0.10, alias="AI_MAX_COST_USD")
    # Estimated output tokens as a fraction of input tokens
    output_ratio: float = Field(default=0.5, alias="AI_OUTPUT_RATIO")


class ObservabilityConfig(BaseSettings):
    """Log level and Prometheus metrics."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=False, alias="PROMETHEUS_METRICS_ENABLED")
    metrics_port: int = Field(default=8000, alias="PROMETHEUS_METRICS_PORT")


class YAMLConfigLoader:
    """Loads YAML config files from a configurable directory."""

    def __init__(self, config_dir: str | Path = "config") -> None:
        self._dir = _repo_root / config_dir

    def load(self, filename: str) -> dict[str, Any]:
        """Load a YAML file; returns empty dict if the file is missing or not a mapping."""
        path = self._dir / filename
        if not path.exists():
            return {}
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}


class Settings(BaseSettings):
    """Root settings container; access all config from one object."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    budget: BudgetSettings = Field(default_factory=BudgetSettings)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # YAML-loaded config (populated in get_settings)
    model_table: dict[str, Any] = Field(default_factory=dict)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings instance. Cached after first call."""
    settings = Settings()
    loader = YAMLConfigLoader()
    settings.model_table = loader.load("models.yaml")
    return settings
