from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    MISTRAL = "mistral"
    XAI = "xai"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class DeliveryStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"


@dataclass(frozen=True)
class Attribution:
    team_id: str | None = None
    project_id: str | None = None
    app_id: str | None = None
    client_id: str | None = None

    def as_dimensions(self) -> dict[str, str]:
        dimensions = {
            "team": self.team_id,
            "project": self.project_id,
            "app": self.app_id,
            "client": self.client_id,
        }
        return {name: value for name, value in dimensions.items() if value}


@dataclass
class OrganizationRecord:
    id: str
    name: str
    plan: str = "STARTER"
    subscription_status: str | None = None
    require_attribution: bool = False


@dataclass
class GatewayKeyRecord:
    organization_id: str
    key_hash: str
    key_prefix: str
    id: str = field(default_factory=new_id)
    created_by_user_id: str | None = None
    label: str | None = None
    status: KeyStatus = KeyStatus.ACTIVE
    enabled: bool = True
    expires_at: datetime | None = None
    default_team_id: str | None = None
    default_project_id: str | None = None
    default_app_id: str | None = None
    default_client_id: str | None = None
    allowed_models: list[str] = field(default_factory=list)
    blocked_models: list[str] = field(default_factory=list)
    require_attribution: bool | None = None
    rate_limit_rpm: int | None = None
    daily_cost_limit_eur: Decimal | None = None
    monthly_cost_limit_eur: Decimal | None = None
    last_used_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def default_attribution(self) -> Attribution:
        return Attribution(
            team_id=self.default_team_id,
            project_id=self.default_project_id,
            app_id=self.default_app_id,
            client_id=self.default_client_id,
        )


@dataclass
class ProviderConnectionRecord:
    organization_id: str
    provider: Provider
    name: str
    encrypted_secret: str
    secret_last4: str
    id: str = field(default_factory=new_id)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ModelRouteRecord:
    organization_id: str
    provider: Provider
    model: str
    id: str = field(default_factory=new_id)
    priority: int = 100
    enabled: bool = True
    max_cost_per_request_eur: Decimal | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AiPolicyRecord:
    organization_id: str
    name: str
    id: str = field(default_factory=new_id)
    allowed_models: list[str] = field(default_factory=list)
    blocked_models: list[str] = field(default_factory=list)
    max_tokens_per_request: int | None = None
    max_cost_per_day_eur: Decimal | None = None
    require_attribution: bool = False
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RequestLogRecord:
    request_id: str
    organization_id: str
    api_key_id: str | None
    model: str
    provider: str | None = None
    id: str = field(default_factory=new_id)
    user_id: str | None = None
    team_id: str | None = None
    project_id: str | None = None
    app_id: str | None = None
    client_id: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_eur: Decimal = Decimal("0")
    latency_ms: int = 0
    status_code: int = 200
    prompt_hash: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    source: str = "chat.completions"
    streamed: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CostEventRecord:
    organization_id: str
    amount_eur: Decimal
    quantity: int
    unique_hash: str
    id: str = field(default_factory=new_id)
    api_key_id: str | None = None
    request_log_id: str | None = None
    provider: str | None = None
    service: str | None = None
    dimensions: dict[str, Any] = field(default_factory=dict)
    source: str = "AI"
    currency: str = "EUR"
    resource_type: str = "LLM_CALL"
    usage_type: str = "tokens"
    unit: str = "TOKENS"
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class WebhookRecord:
    organization_id: str
    url: str
    events: list[str]
    encrypted_secret: str
    secret_hash: str
    id: str = field(default_factory=new_id)
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class WebhookDeliveryRecord:
    webhook_id: str
    organization_id: str
    event_type: str
    status: DeliveryStatus
    attempt: int
    delivery_id: str
    id: str = field(default_factory=new_id)
    http_status: int | None = None
    error: str | None = None
    duration_ms: int | None = None
    created_at: datetime = field(default_factory=utcnow)
