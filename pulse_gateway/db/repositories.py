from __future__ import annotations

from dataclasses import fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulse_gateway.db import models
from pulse_gateway.models.domain import (
    AiPolicyRecord,
    ConnectionStatus,
    CostEventRecord,
    DeliveryStatus,
    GatewayKeyRecord,
    KeyStatus,
    ModelRouteRecord,
    OrganizationRecord,
    Provider,
    ProviderConnectionRecord,
    RequestLogRecord,
    WebhookDeliveryRecord,
    WebhookRecord,
    as_utc,
)

RecordT = TypeVar("RecordT")

_ENUM_FIELDS: dict[type, dict[str, type[Enum]]] = {
    GatewayKeyRecord: {"status": KeyStatus},
    ProviderConnectionRecord: {"provider": Provider, "status": ConnectionStatus},
    ModelRouteRecord: {"provider": Provider},
    WebhookDeliveryRecord: {"status": DeliveryStatus},
}


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


def to_row(model_cls: type[models.Base], record: Any) -> Any:
    return model_cls(**{f.name: _column_value(getattr(record, f.name)) for f in fields(record)})


def to_record(record_cls: type[RecordT], row: Any) -> RecordT:
    enums = _ENUM_FIELDS.get(record_cls, {})
    values: dict[str, Any] = {}
    for f in fields(record_cls):
        value = getattr(row, f.name)
        if f.name in enums and value is not None:
            value = enums[f.name](value)
        elif isinstance(value, datetime):
            value = as_utc(value)
        values[f.name] = value
    return record_cls(**values)


def copy_to_row(record: Any, row: Any) -> None:
    for f in fields(record):
        if f.name != "id":
            setattr(row, f.name, _column_value(getattr(record, f.name)))


class BaseRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def _insert(self, model_cls: type[models.Base], record: RecordT) -> RecordT:
        async with self.session_factory() as session, session.begin():
            session.add(to_row(model_cls, record))
        return record

    async def _save(self, model_cls: type[models.Base], record: RecordT) -> RecordT:
        async with self.session_factory() as session, session.begin():
            row = await session.get(model_cls, record.id)  # type: ignore[attr-defined]
            if row is None:
                session.add(to_row(model_cls, record))
            else:
                copy_to_row(record, row)
        return record

    async def _count(self, statement: Any) -> int:
        async with self.session_factory() as session:
            return int((await session.execute(statement)).scalar_one())


class OrganizationRepository(BaseRepository):
    async def get_organization(self, organization_id: str) -> OrganizationRecord | None:
        async with self.session_factory() as session:
            row = await session.get(models.Organization, organization_id)
            return to_record(OrganizationRecord, row) if row else None

    async def save_organization(self, record: OrganizationRecord) -> OrganizationRecord:
        return await self._save(models.Organization, record)


class KeyRepository(BaseRepository):
    async def get_key_by_hash(self, key_hash: str) -> GatewayKeyRecord | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(select(models.GatewayKey).where(models.GatewayKey.key_hash == key_hash))
            ).scalar_one_or_none()
            return to_record(GatewayKeyRecord, row) if row else None

    async def get_key(self, organization_id: str, key_id: str) -> GatewayKeyRecord | None:
        async with self.session_factory() as session:
            row = await session.get(models.GatewayKey, key_id)
            if row is None or row.organization_id != organization_id:
                return None
            return to_record(GatewayKeyRecord, row)

    async def list_keys(self, organization_id: str) -> list[GatewayKeyRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(models.GatewayKey)
                    .where(models.GatewayKey.organization_id == organization_id)
                    .order_by(models.GatewayKey.created_at.desc())
                )
            ).scalars()
            return [to_record(GatewayKeyRecord, row) for row in rows]

    async def create_key(self, record: GatewayKeyRecord) -> GatewayKeyRecord:
        return await self._insert(models.GatewayKey, record)

    async def save_key(self, record: GatewayKeyRecord) -> GatewayKeyRecord:
        return await self._save(models.GatewayKey, record)

    async def touch_key(self, key_id: str, when: datetime) -> None:
        async with self.session_factory() as session, session.begin():
            await session.execute(
                update(models.GatewayKey).where(models.GatewayKey.id == key_id).values(last_used_at=when)
            )

    async def count_keys(self, organization_id: str) -> int:
        return await self._count(
            select(func.count())
            .select_from(models.GatewayKey)
            .where(
                models.GatewayKey.organization_id == organization_id,
                models.GatewayKey.status == KeyStatus.ACTIVE.value,
            )
        )


class RoutingRepository(BaseRepository):
    async def create_connection(self, record: ProviderConnectionRecord) -> ProviderConnectionRecord:
        return await self._insert(models.ProviderConnection, record)

    async def save_connection(self, record: ProviderConnectionRecord) -> ProviderConnectionRecord:
        return await self._save(models.ProviderConnection, record)

    async def get_connection(self, organization_id: str, connection_id: str) -> ProviderConnectionRecord | None:
        async with self.session_factory() as session:
            row = await session.get(models.ProviderConnection, connection_id)
            if row is None or row.organization_id != organization_id:
                return None
            return to_record(ProviderConnectionRecord, row)

    async def find_connection(
        self, organization_id: str, provider: Provider, name: str
    ) -> ProviderConnectionRecord | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(models.ProviderConnection).where(
                        models.ProviderConnection.organization_id == organization_id,
                        models.ProviderConnection.provider == provider.value,
                        models.ProviderConnection.name == name,
                    )
                )
            ).scalar_one_or_none()
            return to_record(ProviderConnectionRecord, row) if row else None

    async def list_connections(self, organization_id: str) -> list[ProviderConnectionRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(models.ProviderConnection)
                    .where(models.ProviderConnection.organization_id == organization_id)
                    .order_by(models.ProviderConnection.created_at, models.ProviderConnection.id)
                )
            ).scalars()
            return [to_record(ProviderConnectionRecord, row) for row in rows]

    async def get_active_connection(self, organization_id: str, provider: Provider) -> ProviderConnectionRecord | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(models.ProviderConnection)
                    .where(
                        models.ProviderConnection.organization_id == organization_id,
                        models.ProviderConnection.provider == provider.value,
                        models.ProviderConnection.status == ConnectionStatus.ACTIVE.value,
                    )
                    .order_by(models.ProviderConnection.created_at, models.ProviderConnection.id)
                    .limit(1)
                )
            ).scalar_one_or_none()
            return to_record(ProviderConnectionRecord, row) if row else None

    async def count_provider_connections(self, organization_id: str) -> int:
        return await self._count(
            select(func.count())
            .select_from(models.ProviderConnection)
            .where(models.ProviderConnection.organization_id == organization_id)
        )

    async def create_route(self, record: ModelRouteRecord) -> ModelRouteRecord:
        return await self._insert(models.ModelRoute, record)

    async def save_route(self, record: ModelRouteRecord) -> ModelRouteRecord:
        return await self._save(models.ModelRoute, record)

    async def get_route(self, organization_id: str, route_id: str) -> ModelRouteRecord | None:
        async with self.session_factory() as session:
            row = await session.get(models.ModelRoute, route_id)
            if row is None or row.organization_id != organization_id:
                return None
            return to_record(ModelRouteRecord, row)

    async def find_route(self, organization_id: str, provider: Provider, model: str) -> ModelRouteRecord | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(models.ModelRoute).where(
                        models.ModelRoute.organization_id == organization_id,
                        models.ModelRoute.provider == provider.value,
                        models.ModelRoute.model == model,
                    )
                )
            ).scalar_one_or_none()
            return to_record(ModelRouteRecord, row) if row else None

    async def list_routes(self, organization_id: str) -> list[ModelRouteRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(models.ModelRoute)
                    .where(models.ModelRoute.organization_id == organization_id)
                    .order_by(models.ModelRoute.priority, models.ModelRoute.id)
                )
            ).scalars()
            return [to_record(ModelRouteRecord, row) for row in rows]

    async def list_enabled_routes(self, organization_id: str, model: str) -> list[ModelRouteRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(models.ModelRoute)
                    .where(
                        models.ModelRoute.organization_id == organization_id,
                        models.ModelRoute.model == model,
                        models.ModelRoute.enabled.is_(True),
                    )
                    .order_by(models.ModelRoute.priority, models.ModelRoute.id)
                )
            ).scalars()
            return [to_record(ModelRouteRecord, row) for row in rows]

    async def count_model_routes(self, organization_id: str) -> int:
        return await self._count(
            select(func.count()).select_from(models.ModelRoute).where(models.ModelRoute.organization_id == organization_id)
        )


class PolicyRepository(BaseRepository):
    async def create_policy(self, record: AiPolicyRecord) -> AiPolicyRecord:
        return await self._insert(models.AiPolicy, record)

    async def save_policy(self, record: AiPolicyRecord) -> AiPolicyRecord:
        return await self._save(models.AiPolicy, record)

    async def get_policy(self, organization_id: str, policy_id: str) -> AiPolicyRecord | None:
        async with self.session_factory() as session:
            row = await session.get(models.AiPolicy, policy_id)
            if row is None or row.organization_id != organization_id:
                return None
            return to_record(AiPolicyRecord, row)

    async def delete_policy(self, policy_id: str) -> None:
        async with self.session_factory() as session, session.begin():
            row = await session.get(models.AiPolicy, policy_id)
            if row is not None:
                await session.delete(row)

    async def list_policies(self, organization_id: str, *, enabled_only: bool = False) -> list[AiPolicyRecord]:
        statement = select(models.AiPolicy).where(models.AiPolicy.organization_id == organization_id)
        if enabled_only:
            statement = statement.where(models.AiPolicy.enabled.is_(True))
        async with self.session_factory() as session:
            rows = (
                await session.execute(statement.order_by(models.AiPolicy.created_at.desc(), models.AiPolicy.id))
            ).scalars()
            return [to_record(AiPolicyRecord, row) for row in rows]


class MeteringRepository(BaseRepository):
    async def add_request_log(self, record: RequestLogRecord) -> RequestLogRecord:
        return await self._insert(models.RequestLog, record)

    async def add_cost_event(self, record: CostEventRecord) -> CostEventRecord:
        """Insert a ledger entry; an entry with the same unique hash is returned instead of duplicated."""
        async with self.session_factory() as session, session.begin():
            existing = (
                await session.execute(select(models.CostEvent).where(models.CostEvent.unique_hash == record.unique_hash))
            ).scalar_one_or_none()
            if existing is not None:
                return to_record(CostEventRecord, existing)
            session.add(to_row(models.CostEvent, record))
        return record

    async def sum_cost_for_key(self, api_key_id: str, since: datetime) -> Decimal:
        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.coalesce(func.sum(models.CostEvent.amount_eur), 0)).where(
                        models.CostEvent.api_key_id == api_key_id,
                        models.CostEvent.occurred_at >= since,
                    )
                )
            ).scalar_one()
            return Decimal(str(total or 0))

    async def sum_cost_for_organization(self, organization_id: str, since: datetime) -> Decimal:
        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.coalesce(func.sum(models.CostEvent.amount_eur), 0)).where(
                        models.CostEvent.organization_id == organization_id,
                        models.CostEvent.source == "AI",
                        models.CostEvent.occurred_at >= since,
                    )
                )
            ).scalar_one()
            return Decimal(str(total or 0))

    async def list_request_logs(self, organization_id: str, limit: int = 100) -> list[RequestLogRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(models.RequestLog)
                    .where(models.RequestLog.organization_id == organization_id)
                    .order_by(models.RequestLog.created_at.desc())
                    .limit(limit)
                )
            ).scalars()
            return [to_record(RequestLogRecord, row) for row in rows]

    async def list_cost_events(self, organization_id: str, limit: int = 100) -> list[CostEventRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(models.CostEvent)
                    .where(models.CostEvent.organization_id == organization_id)
                    .order_by(models.CostEvent.occurred_at.desc())
                    .limit(limit)
                )
            ).scalars()
            return [to_record(CostEventRecord, row) for row in rows]


class WebhookRepository(BaseRepository):
    async def create_webhook(self, record: WebhookRecord) -> WebhookRecord:
        return await self._insert(models.Webhook, record)

    async def save_webhook(self, record: WebhookRecord) -> WebhookRecord:
        return await self._save(models.Webhook, record)

    async def get_webhook(self, organization_id: str, webhook_id: str) -> WebhookRecord | None:
        async with self.session_factory() as session:
            row = await session.get(models.Webhook, webhook_id)
            if row is None or row.organization_id != organization_id:
                return None
            return to_record(WebhookRecord, row)

    async def delete_webhook(self, webhook_id: str) -> None:
        async with self.session_factory() as session, session.begin():
            row = await session.get(models.Webhook, webhook_id)
            if row is not None:
                await session.delete(row)

    async def list_webhooks(self, organization_id: str) -> list[WebhookRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(select(models.Webhook).where(models.Webhook.organization_id == organization_id))
            ).scalars()
            return [to_record(WebhookRecord, row) for row in rows]

    async def list_webhooks_for_event(self, organization_id: str, event: str) -> list[WebhookRecord]:
        webhooks = await self.list_webhooks(organization_id)
        return [webhook for webhook in webhooks if webhook.enabled and event in (webhook.events or [])]

    async def add_webhook_delivery(self, record: WebhookDeliveryRecord) -> WebhookDeliveryRecord:
        return await self._insert(models.WebhookDelivery, record)

    async def list_webhook_deliveries(self, webhook_id: str) -> list[WebhookDeliveryRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(models.WebhookDelivery)
                    .where(models.WebhookDelivery.webhook_id == webhook_id)
                    .order_by(models.WebhookDelivery.created_at, models.WebhookDelivery.attempt)
                )
            ).scalars()
            return [to_record(WebhookDeliveryRecord, row) for row in rows]


class Repository(
    OrganizationRepository,
    KeyRepository,
    RoutingRepository,
    PolicyRepository,
    MeteringRepository,
    WebhookRepository,
):
    """Every persistence contract over one session factory."""
