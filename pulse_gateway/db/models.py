"""Database models for the gateway.

- Organizations: plan and attribution policy
- Gateway keys: hashed client credentials with limits and default attribution
- Provider connections and model routes: where a model is sent
- AI policies: organization-wide model, token and spend rules
- Request logs and cost events: the metering ledger
- Webhooks and webhook deliveries: outbound notifications
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pulse_gateway.db.base import Base, CreatedAtMixin, IDMixin

MONEY = Numeric(18, 8)


class Organization(Base, IDMixin, CreatedAtMixin):
    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    plan: Mapped[str] = mapped_column(String(20), default="STARTER", nullable=False)
    subscription_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    require_attribution: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class GatewayKey(Base, IDMixin, CreatedAtMixin):
    __tablename__ = "gateway_keys"

    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, comment="SHA-256 of the secret")
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    created_by_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    default_team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    default_project_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    default_app_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    default_client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    allowed_models: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    blocked_models: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    require_attribution: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    rate_limit_rpm: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    daily_cost_limit_eur: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    monthly_cost_limit_eur: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ProviderConnection(Base, IDMixin, CreatedAtMixin):
    __tablename__ = "provider_connections"
    __table_args__ = (UniqueConstraint("organization_id", "provider", "name", name="uq_connection_org_provider_name"),)

    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE", nullable=False)
    encrypted_secret: Mapped[str] = mapped_column(Text, nullable=False)
    secret_last4: Mapped[str] = mapped_column(String(4), nullable=False)


class ModelRoute(Base, IDMixin, CreatedAtMixin):
    __tablename__ = "model_routes"
    __table_args__ = (UniqueConstraint("organization_id", "provider", "model", name="uq_route_org_provider_model"),)

    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    max_cost_per_request_eur: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)


class AiPolicy(Base, IDMixin, CreatedAtMixin):
    __tablename__ = "ai_policies"

    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    allowed_models: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    blocked_models: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    max_tokens_per_request: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_cost_per_day_eur: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    require_attribution: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class RequestLog(Base, IDMixin, CreatedAtMixin):
    __tablename__ = "request_logs"
    __table_args__ = (Index("ix_request_logs_org_created", "organization_id", "created_at"),)

    request_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    organization_id: Mapped[str] = mapped_column(String(32), nullable=False)
    api_key_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    app_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    estimated_cost_eur: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    prompt_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="SHA-256, never the prompt")
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(40), nullable=False)
    streamed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class CostEvent(Base, IDMixin):
    __tablename__ = "cost_events"
    __table_args__ = (Index("ix_cost_events_key_occurred", "api_key_id", "occurred_at"),)

    organization_id: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    api_key_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    request_log_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    source: Mapped[str] = mapped_column(String(16), default="AI", nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    amount_eur: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    resource_type: Mapped[str] = mapped_column(String(40), default="LLM_CALL", nullable=False)
    service: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    usage_type: Mapped[str] = mapped_column(String(40), default="tokens", nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="TOKENS", nullable=False)
    dimensions: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    unique_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)


class Webhook(Base, IDMixin, CreatedAtMixin):
    __tablename__ = "webhooks"

    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    encrypted_secret: Mapped[str] = mapped_column(Text, nullable=False)
    secret_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class WebhookDelivery(Base, IDMixin, CreatedAtMixin):
    __tablename__ = "webhook_deliveries"

    webhook_id: Mapped[str] = mapped_column(ForeignKey("webhooks.id", ondelete="CASCADE"), index=True)
    organization_id: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    http_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    delivery_id: Mapped[str] = mapped_column(String(32), nullable=False)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
