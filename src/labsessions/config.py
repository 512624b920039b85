"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml. Environment variables override it using ``__``
as the nested delimiter (e.g. ``POOL__SIZE=2``, ``BROWSER__API_URL=...``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from labsessions.config import get_settings

    s = get_settings()
    print(s.pool.size)
    print(s.runtime.shared_containers)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Unknown keys are rejected."""

    model_config = {"extra": "forbid"}


class PoolConfig(_StrictModel):
    size: int = 0  # pooled sessions kept warm per project; 0 disables pooling
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    reconcile_timeout_ms: int = 300000  # 5 minutes per convergence run

    @field_validator("size")
    @classmethod
    def clamp_size(cls, v: int) -> int:
        return max(0, v)


class RuntimeConfig(_StrictModel):
    runtime: str | None = None  # "docker" | plugin runtime name | None (auto)
    # Long-lived containers attached to every session network (browser, proxy, ...)
    shared_containers: list[str] = []
    workspaces_volume: str = "lab_session_workspaces"
    workspaces_mount: str = "/workspaces"
    browser_socket_volume: str = "lab_browser_sockets"
    browser_socket_dir: str = "/tmp/agent-browser-socket"
    stop_timeout: int = 10  # seconds of grace before SIGKILL
    volume_clone_timeout: float = 300.0


class BrowserConfig(_StrictModel):
    enabled: bool = True
    api_url: str = "http://browser:9222"
    reconcile_interval_ms: int = 5000
    max_retries: int = 3
    cleanup_delay_ms: int = 10000  # grace period after the last subscriber leaves
    warm_pooled_sessions: bool = True
    warm_up_timeout: float = 30.0
    # Seconds a daemon may stay running-but-not-ready before it is restarted
    start_timeout: float = 60.0


class ProxyConfig(_StrictModel):
    base_domain: str = "localhost"


class DatabaseConfig(_StrictModel):
    path: str = "data/labsessions.db"


class MonitorConfig(_StrictModel):
    retry_ms: int = 5000  # delay before re-subscribing to runtime events
    network_reconcile_interval_ms: int = 60000


class PluginConfig(_StrictModel):
    enabled: bool = True


class LoggingConfig(_StrictModel):
    level: str = "INFO"
    format: Literal["console", "json"] = "console"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    pool: PoolConfig = PoolConfig()
    runtime: RuntimeConfig = RuntimeConfig()
    browser: BrowserConfig = BrowserConfig()
    proxy: ProxyConfig = ProxyConfig()
    database: DatabaseConfig = DatabaseConfig()
    monitor: MonitorConfig = MonitorConfig()
    logging: LoggingConfig = LoggingConfig()
    plugins: dict[str, PluginConfig] = {}  # [plugins.<name>]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def database_path(self) -> Path:
        p = Path(self.database.path)
        if not p.is_absolute():
            p = (self.project_root / p).resolve()
        return p

    @cached_property
    def pool_reconcile_timeout(self) -> float:
        return self.pool.reconcile_timeout_ms / 1000

    @cached_property
    def reconcile_interval(self) -> float:
        return self.browser.reconcile_interval_ms / 1000

    @cached_property
    def browser_cleanup_delay(self) -> float:
        return self.browser.cleanup_delay_ms / 1000


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
