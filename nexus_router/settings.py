"""
Typed settings management using pydantic-settings.

All router tunables are strongly-typed and environment-aware:
- Routing tunables (attempt budget, sleep duration, circuit breaker, caps)
- Connection pool lifecycle (prune interval, dormancy threshold, caching)
- Performance ledger durability (path, checkpoint interval, lock stripes)
- XDG-compliant paths
- Observability (Logfire)
- Provider API keys (secrets)

Usage:
    from nexus_router.settings import get_settings

    settings = get_settings()
    print(settings.router.max_attempts_per_request)

Every tunable can be overridden with NEXUS_ROUTER_<FIELD>, e.g.
NEXUS_ROUTER_SLEEP_DURATION_MS=60000.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Path Settings
# =============================================================================


def _get_xdg_dir(env_var: str) -> Path:
    """Get XDG directory, defaulting to ~/.nexus_router if not set."""
    xdg_base = os.getenv(env_var)
    if xdg_base:
        return Path(xdg_base) / "nexus_router"
    return Path.home() / ".nexus_router"


class PathSettings(BaseSettings):
    """XDG-compliant path configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_ROUTER_",
        extra="ignore",
        populate_by_name=True,
    )

    providers_file_override: Optional[Path] = Field(default=None, alias="NEXUS_ROUTER_PROVIDERS_FILE")

    @property
    def config_dir(self) -> Path:
        """XDG_CONFIG_HOME/nexus_router or ~/.nexus_router"""
        return _get_xdg_dir("XDG_CONFIG_HOME")

    @property
    def data_dir(self) -> Path:
        """XDG_DATA_HOME/nexus_router or ~/.nexus_router"""
        return _get_xdg_dir("XDG_DATA_HOME")

    @property
    def providers_file(self) -> Path:
        if self.providers_file_override is not None:
            return self.providers_file_override
        return self.config_dir / "providers.json"

    @property
    def performance_file(self) -> Path:
        return self.data_dir / "performance.json"

    def ensure_directories(self) -> None:
        """Create all necessary directories with secure permissions."""
        for directory in [self.config_dir, self.data_dir]:
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)


# =============================================================================
# API Key Settings (Secrets)
# =============================================================================


class APISettings(BaseSettings):
    """Primary API keys for the built-in providers.

    Numbered keys (OPENAI_API_KEY_2, ...) are discovered separately by
    provider_config.discover_env_credentials. SecretStr prevents
    accidental logging of sensitive values.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    openai_api_key: Optional[SecretStr] = Field(default=None, alias="OPENAI_API_KEY")
    gemini_api_key: Optional[SecretStr] = Field(default=None, alias="GEMINI_API_KEY")
    groq_api_key: Optional[SecretStr] = Field(default=None, alias="GROQ_API_KEY")

    def get_key_value(self, provider: str) -> Optional[str]:
        """Raw value of a provider's primary key, or None."""
        value = getattr(self, f"{provider.lower()}_api_key", None)
        if isinstance(value, SecretStr):
            return value.get_secret_value() or None
        return None

    def has_provider(self, provider: str) -> bool:
        return self.get_key_value(provider) is not None

    def as_environ(self) -> Dict[str, str]:
        """Keys loaded from .env, shaped like os.environ for credential discovery."""
        env = {}
        for provider in ("openai", "gemini", "groq"):
            value = self.get_key_value(provider)
            if value:
                env[f"{provider.upper()}_API_KEY"] = value
        return env


# =============================================================================
# Router Settings
# =============================================================================


class RouterSettings(BaseSettings):
    """Request routing tunables."""

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_ROUTER_",
        extra="ignore",
    )

    max_attempts_per_request: int = Field(default=5, ge=1, le=50)
    sleep_duration_ms: int = Field(default=300_000, ge=0)
    min_calls_for_circuit_breaker: int = Field(default=10, ge=0)
    min_success_rate: float = Field(default=0.2, ge=0.0, le=1.0)
    max_latency_consideration_ms: float = Field(default=5000.0, gt=0)
    max_cost_consideration_per_unit: float = Field(default=0.05, gt=0)
    learning_rate: float = Field(default=0.01, ge=0.0, le=1.0)
    ema_alpha: float = Field(default=0.1, gt=0.0, le=1.0)
    stress_interval_seconds: float = Field(default=60.0, gt=0)

    @property
    def sleep_duration_seconds(self) -> float:
        return self.sleep_duration_ms / 1000.0


class PoolSettings(BaseSettings):
    """Connection pool lifecycle."""

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_ROUTER_POOL_",
        extra="ignore",
    )

    prune_interval_seconds: float = Field(default=600.0, gt=0)
    dormancy_threshold_seconds: float = Field(default=900.0, gt=0)
    cache_per_credential: bool = True
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _prune_not_slower_than_dormancy(self) -> "PoolSettings":
        # A prune interval longer than the threshold would let adapters linger
        if self.prune_interval_seconds > self.dormancy_threshold_seconds:
            self.prune_interval_seconds = self.dormancy_threshold_seconds
        return self


class LedgerSettings(BaseSettings):
    """Performance ledger durability."""

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_ROUTER_LEDGER_",
        extra="ignore",
    )

    path: Optional[Path] = None  # defaults to PathSettings.performance_file
    checkpoint_interval_seconds: float = Field(default=5.0, gt=0)
    stripes: int = Field(default=16, ge=1, le=1024)
    persist: bool = True


class ObservabilitySettings(BaseSettings):
    """Structured event export."""

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_ROUTER_",
        extra="ignore",
    )

    logfire_enabled: bool = False
    logfire_token: Optional[SecretStr] = Field(default=None, alias="LOGFIRE_TOKEN")
    service_name: str = "nexus-router"
    log_level: str = "INFO"


# =============================================================================
# Master Settings
# =============================================================================


class Settings(BaseSettings):
    """Master settings combining all configuration sections."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="NEXUS_ROUTER_",
        extra="ignore",
        case_sensitive=False,
    )

    paths: PathSettings = Field(default_factory=PathSettings)
    api: APISettings = Field(default_factory=APISettings)
    router: RouterSettings = Field(default_factory=RouterSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @property
    def ledger_path(self) -> Path:
        return self.ledger.path or self.paths.performance_file

    @property
    def configured_providers(self) -> List[str]:
        return [p for p in ("openai", "gemini", "groq") if self.api.has_provider(p)]

    def ensure_directories(self) -> None:
        self.paths.ensure_directories()


# =============================================================================
# Cached Singleton Accessors
# =============================================================================


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached settings singleton.

    To reload, call clear_settings_cache() first.
    """
    return Settings()


@lru_cache(maxsize=1)
def get_router_settings() -> RouterSettings:
    return RouterSettings()


def clear_settings_cache() -> None:
    """Clear all cached settings instances.

    Call this if environment variables or .env files have changed
    and you need to reload configuration.
    """
    get_settings.cache_clear()
    get_router_settings.cache_clear()
