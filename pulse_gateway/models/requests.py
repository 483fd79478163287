from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, HttpUrl

from pulse_gateway.models.domain import ConnectionStatus, Provider


class ChatMessage(BaseModel):
    role: Literal["system", "developer", "user", "assistant", "tool"]
    content: str | list[dict[str, Any]] | None = None
    name: str | None = None


class ChatCompletionRequest(BaseModel):
    model: str = Field(min_length=1)
    messages: list[ChatMessage] = Field(min_length=1)
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)
    stream: bool | None = False
    user: str | None = None
    metadata: dict[str, Any] | None = None


class ResponsesInputItem(BaseModel):
    role: Literal["system", "developer", "user", "assistant"] = "user"
    content: str | list[dict[str, Any]]


class ResponsesRequest(BaseModel):
    model: str = Field(default="gpt-4", min_length=1)
    input: str | list[str | ResponsesInputItem]
    instructions: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_output_tokens: int | None = Field(default=None, ge=1)
    stream: bool | None = False


class CreateKeyRequest(BaseModel):
    label: str | None = None
    created_by_user_id: str | None = None
    default_team_id: str | None = None
    default_project_id: str | None = None
    default_app_id: str | None = None
    default_client_id: str | None = None
    allowed_models: list[str] = Field(default_factory=list)
    blocked_models: list[str] = Field(default_factory=list)
    require_attribution: bool | None = None
    rate_limit_rpm: int | None = Field(default=None, ge=1)
    daily_cost_limit_eur: Decimal | None = Field(default=None, gt=0)
    monthly_cost_limit_eur: Decimal | None = Field(default=None, gt=0)
    expires_at: datetime | None = None


class UpdateKeyRequest(BaseModel):
    label: str | None = None
    enabled: bool | None = None
    default_team_id: str | None = None
    default_project_id: str | None = None
    default_app_id: str | None = None
    default_client_id: str | None = None
    allowed_models: list[str] | None = None
    blocked_models: list[str] | None = None
    require_attribution: bool | None = None
    rate_limit_rpm: int | None = Field(default=None, ge=1)
    daily_cost_limit_eur: Decimal | None = Field(default=None, gt=0)
    monthly_cost_limit_eur: Decimal | None = Field(default=None, gt=0)
    expires_at: datetime | None = None


class CreateConnectionRequest(BaseModel):
    provider: Provider
    name: str = Field(min_length=1, max_length=100)
    api_key: str = Field(min_length=1)


class UpdateConnectionRequest(BaseModel):
    status: ConnectionStatus


class CreateRouteRequest(BaseModel):
    provider: Provider
    model: str = Field(min_length=1)
    priority: int = Field(default=100, ge=0)
    enabled: bool = True
    max_cost_per_request_eur: Decimal | None = Field(default=None, gt=0)


class UpdateRouteRequest(BaseModel):
    priority: int | None = Field(default=None, ge=0)
    enabled: bool | None = None
    max_cost_per_request_eur: Decimal | None = Field(default=None, gt=0)


class CreatePolicyRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    allowed_models: list[str] = Field(default_factory=list)
    blocked_models: list[str] = Field(default_factory=list)
    max_tokens_per_request: int | None = Field(default=None, gt=0)
    max_cost_per_day_eur: Decimal | None = Field(default=None, gt=0)
    require_attribution: bool = False
    enabled: bool = True


class UpdatePolicyRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    allowed_models: list[str] | None = None
    blocked_models: list[str] | None = None
    max_tokens_per_request: int | None = Field(default=None, gt=0)
    max_cost_per_day_eur: Decimal | None = Field(default=None, gt=0)
    require_attribution: bool | None = None
    enabled: bool | None = None


class CreateWebhookRequest(BaseModel):
    url: HttpUrl
    events: list[str] = Field(min_length=1)
    secret: str | None = None


class UpdateWebhookRequest(BaseModel):
    enabled: bool


class UpsertOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    plan: Literal["FREE", "STARTER", "PRO", "BUSINESS"] = "STARTER"
    subscription_status: str | None = None
    require_attribution: bool = False
