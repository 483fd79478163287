from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModelPriceOverride(BaseModel):
    input_per_million_eur: Decimal = Field(ge=0)
    output_per_million_eur: Decimal = Field(ge=0)
    provider: str | None = None


class GatewaySettings(BaseModel):
    provider_timeout_seconds: float = 60.0
    health_check_timeout_seconds: float = 10.0
    default_output_tokens: int = 1000
    api_bases: dict[str, str] = Field(default_factory=dict)


class RoutingSettings(BaseModel):
    failover_enabled: bool = False


class MeteringSettings(BaseModel):
    failure_cost_policy: Literal["zero", "partial"] = "zero"
    log_rejected_requests: bool = True


class WebhookSettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    timeout_seconds: float = Field(default=10.0, gt=0)


class RateLimitSettings(BaseModel):
    window_seconds: int = Field(default=60, ge=1)


class AppConfig(BaseModel):
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    metering: MeteringSettings = Field(default_factory=MeteringSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    pricing: dict[str, ModelPriceOverride] = Field(default_factory=dict)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PULSE_", extra="ignore")

    app_name: str = "Pulse AI Gateway"
    app_env: str = "dev"
    log_level: str = "INFO"
    config_path: str = "config.yaml"
    database_url: str = "sqlite+aiosqlite:///./pulse.db"
    redis_url: str | None = None
    encryption_key: str = "pulse-dev-encryption-key-not-for-production"
    master_key: str | None = None
    default_plan: Literal["STARTER", "PRO", "BUSINESS"] = "STARTER"


def _resolve_env_token(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("os.environ/"):
        env_name = value.split("/", 1)[1]
        return os.getenv(env_name)
    if isinstance(value, dict):
        return {k: _resolve_env_token(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_token(v) for v in value]
    return value


def load_yaml_config(path: str | Path) -> AppConfig:
    cfg_path = Path(path)
    if not cfg_path.exists():
        return AppConfig()

    data = yaml.safe_load(cfg_path.read_text()) or {}
    return AppConfig.model_validate(_resolve_env_token(data))


@lru_cache
def get_settings() -> Settings:
    return Settings()
