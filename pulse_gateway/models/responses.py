from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from pulse_gateway.models.domain import ConnectionStatus, KeyStatus, Provider


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class Choice(BaseModel):
    index: int
    message: AssistantMessage
    finish_reason: Literal["stop", "length", "content_filter"] | None = "stop"


class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[Choice]
    usage: Usage
    provider: str | None = None
    cost_eur: str | None = None


class OutputText(BaseModel):
    text: str


class ResponsesResponse(BaseModel):
    id: str
    object: Literal["response"] = "response"
    created: int
    model: str
    output_text: OutputText
    usage: Usage


class ModelInfo(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int
    owned_by: str


class ModelsResponse(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelInfo]


class KeyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    key_prefix: str
    label: str | None = None
    status: KeyStatus
    enabled: bool
    expires_at: datetime | None = None
    default_team_id: str | None = None
    default_project_id: str | None = None
    default_app_id: str | None = None
    default_client_id: str | None = None
    allowed_models: list[str] = Field(default_factory=list)
    blocked_models: list[str] = Field(default_factory=list)
    require_attribution: bool | None = None
    rate_limit_rpm: int | None = None
    daily_cost_limit_eur: Decimal | None = None
    monthly_cost_limit_eur: Decimal | None = None
    last_used_at: datetime | None = None
    created_at: datetime


class IssuedKeyResponse(KeyResponse):
    secret: str


class ConnectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    provider: Provider
    name: str
    status: ConnectionStatus
    secret_last4: str
    created_at: datetime


class ConnectionTestResponse(BaseModel):
    ok: bool
    latency_ms: int
    error: str | None = None
    code: str | None = None


class RouteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    provider: Provider
    model: str
    priority: int
    enabled: bool
    max_cost_per_request_eur: Decimal | None = None


class PolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    name: str
    allowed_models: list[str]
    blocked_models: list[str]
    max_tokens_per_request: int | None = None
    max_cost_per_day_eur: Decimal | None = None
    require_attribution: bool
    enabled: bool
    created_at: datetime


class WebhookResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    url: str
    events: list[str]
    enabled: bool
    created_at: datetime


class CreatedWebhookResponse(WebhookResponse):
    secret: str


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    plan: str
    subscription_status: str | None = None
    require_attribution: bool


class WebhookTestResponse(BaseModel):
    delivered: bool
