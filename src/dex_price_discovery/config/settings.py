"""Configuration management for the price discovery engine."""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, cast

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ..utils.constants import DEFAULT_STABLECOIN_IDS, SBTC_CONTRACT_ID

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "PRICE_CONFIG_FILE"
PROFILE_ENV_VAR = "PRICE_PROFILE"
DEFAULT_PROFILE = "default"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get(DEFAULT_PROFILE, {}))
    requested = (os.getenv(PROFILE_ENV_VAR) or DEFAULT_PROFILE).lower()
    if requested != DEFAULT_PROFILE and requested in data:
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested]))
    if base_section:
        return base_section
    # Flat files without profile tables are used as-is.
    return {key: value for key, value in data.items() if isinstance(value, dict)}


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    return _select_profile(payload), path


class AnchorConfig(BaseModel):
    """Trusted tokens whose USD price is supplied rather than discovered."""

    # NoDecode lets ANCHORS__STABLECOINS=a,b reach the comma splitter below.
    stablecoins: Annotated[List[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_STABLECOIN_IDS))
    stablecoin_price_usd: float = Field(default=1.0, gt=0.0)
    btc_token_id: str = Field(default=SBTC_CONTRACT_ID)
    btc_price_usd: Optional[float] = None

    @field_validator("stablecoins", mode="before")
    @classmethod
    def _split_stablecoins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("stablecoins")
    @classmethod
    def _unique_stablecoins(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))


class PropagationConfig(BaseModel):
    """Tuning knobs for the iterative propagation engine."""

    max_cycles: int = Field(default=10, ge=1, le=1_000)
    decay_factor: float = Field(default=0.85, gt=0.0, lt=1.0)
    min_liquidity_usd: float = Field(default=0.0, ge=0.0)
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence_epsilon: float = Field(default=1e-9, ge=0.0)
    max_workers: int = Field(default=1, ge=1, le=64)
    anchor_deviation_warn_pct: float = Field(default=5.0, ge=0.0)


class RefreshConfig(BaseModel):
    """Scheduling and failure handling for repeated runs."""

    ttl_seconds: int = Field(default=300, ge=0)
    run_timeout_seconds: float = Field(default=30.0, gt=0.0)
    fetch_attempts: int = Field(default=3, ge=1, le=10)
    source_url: Optional[str] = None
    source_path: Optional[Path] = None
    http_timeout: float = Field(default=10.0, ge=1.0, le=120.0)


class MonitoringConfig(BaseModel):
    """Logging and metrics export configuration."""

    log_level: str = Field(default="INFO")
    log_format: Literal["json", "text"] = "json"
    metrics_file: Optional[Path] = None

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    anchors: AnchorConfig = Field(default_factory=AnchorConfig)
    propagation: PropagationConfig = Field(default_factory=PropagationConfig)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    config_file: Optional[Path] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, path = _load_toml_config()
            if path is not None:
                payload = {**payload, "config_file": str(path)}
            return payload

        # Runtime environment variables win over static config file values.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _btc_anchor_not_stablecoin(self) -> "AppConfig":
        if self.anchors.btc_token_id in self.anchors.stablecoins:
            raise ValueError(
                f"BTC anchor {self.anchors.btc_token_id} cannot also be a stablecoin anchor"
            )
        return self


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AnchorConfig",
    "AppConfig",
    "MonitoringConfig",
    "PropagationConfig",
    "RefreshConfig",
    "get_app_config",
]
