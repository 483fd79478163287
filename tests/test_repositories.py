from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import ORG_ID
from pulse_gateway.db import Repository, create_engine, create_session_factory, create_tables
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
    utcnow,
)


@pytest.fixture
async def repository(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'pulse.db'}")
    await create_tables(engine)
    repository = Repository(create_session_factory(engine))
    await repository.save_organization(OrganizationRecord(id=ORG_ID, name="Acme", plan="PRO"))
    yield repository
    await engine.dispose()


def connection(provider: Provider = Provider.OPENAI, name: str = "default", **fields) -> ProviderConnectionRecord:
    return ProviderConnectionRecord(
        organization_id=ORG_ID,
        provider=provider,
        name=name,
        encrypted_secret="sealed",
        secret_last4="1234",
        **fields,
    )


@pytest.mark.asyncio
async def test_organization_upsert(repository):
    await repository.save_organization(OrganizationRecord(id=ORG_ID, name="Acme GmbH", plan="BUSINESS"))

    organization = await repository.get_organization(ORG_ID)

    assert organization.name == "Acme GmbH"
    assert organization.plan == "BUSINESS"
    assert await repository.get_organization("org_missing") is None


@pytest.mark.asyncio
async def test_key_round_trip(repository):
    record = GatewayKeyRecord(
        organization_id=ORG_ID,
        key_hash="a" * 64,
        key_prefix="pulse_key_ab",
        allowed_models=["gpt-4o-mini"],
        daily_cost_limit_eur=Decimal("2.50"),
    )
    await repository.create_key(record)

    loaded = await repository.get_key_by_hash("a" * 64)
    assert loaded.id == record.id
    assert loaded.status is KeyStatus.ACTIVE
    assert loaded.allowed_models == ["gpt-4o-mini"]
    assert loaded.daily_cost_limit_eur == Decimal("2.50")
    assert loaded.created_at.tzinfo is not None
    assert await repository.get_key("org_other", record.id) is None

    now = utcnow()
    await repository.touch_key(record.id, now)
    loaded.status = KeyStatus.REVOKED
    await repository.save_key(loaded)

    reloaded = await repository.get_key(ORG_ID, record.id)
    assert reloaded.status is KeyStatus.REVOKED
    assert await repository.count_keys(ORG_ID) == 0


@pytest.mark.asyncio
async def test_active_connection_and_routes(repository):
    disabled = connection(name="old", status=ConnectionStatus.DISABLED)
    active = connection(name="new")
    await repository.create_connection(disabled)
    await repository.create_connection(active)
    await repository.create_route(ModelRouteRecord(organization_id=ORG_ID, provider=Provider.OPENAI, model="m", priority=20))
    await repository.create_route(
        ModelRouteRecord(organization_id=ORG_ID, provider=Provider.MISTRAL, model="m", priority=10, enabled=False)
    )

    found = await repository.get_active_connection(ORG_ID, Provider.OPENAI)
    assert found.id == active.id
    assert found.provider is Provider.OPENAI
    assert await repository.get_active_connection(ORG_ID, Provider.XAI) is None
    assert (await repository.find_connection(ORG_ID, Provider.OPENAI, "old")).status is ConnectionStatus.DISABLED
    assert await repository.count_provider_connections(ORG_ID) == 2

    enabled = await repository.list_enabled_routes(ORG_ID, "m")
    assert [r.provider for r in enabled] == [Provider.OPENAI]
    assert [r.priority for r in await repository.list_routes(ORG_ID)] == [10, 20]
    assert await repository.count_model_routes(ORG_ID) == 2


@pytest.mark.asyncio
async def test_cost_ledger_is_idempotent_and_summed(repository):
    log = await repository.add_request_log(
        RequestLogRecord(request_id="req_1", organization_id=ORG_ID, api_key_id="key_1", model="gpt-4o-mini")
    )
    first = CostEventRecord(
        organization_id=ORG_ID,
        api_key_id="key_1",
        request_log_id=log.id,
        amount_eur=Decimal("0.60"),
        quantity=10,
        unique_hash="hash-1",
        dimensions={"app": "crm"},
    )
    await repository.add_cost_event(first)
    duplicate = await repository.add_cost_event(
        CostEventRecord(organization_id=ORG_ID, api_key_id="key_1", amount_eur=Decimal("0.60"), quantity=10, unique_hash="hash-1")
    )
    await repository.add_cost_event(
        CostEventRecord(organization_id=ORG_ID, api_key_id="key_1", amount_eur=Decimal("0.40"), quantity=5, unique_hash="hash-2")
    )
    await repository.add_cost_event(
        CostEventRecord(
            organization_id=ORG_ID,
            api_key_id="key_1",
            amount_eur=Decimal("5"),
            quantity=5,
            unique_hash="hash-3",
            occurred_at=utcnow() - timedelta(days=40),
        )
    )

    assert duplicate.id == first.id
    assert len(await repository.list_cost_events(ORG_ID)) == 3
    since = utcnow() - timedelta(days=1)
    assert await repository.sum_cost_for_key("key_1", since) == Decimal("1.00")
    assert await repository.sum_cost_for_key("key_2", since) == Decimal("0")
    assert await repository.sum_cost_for_organization(ORG_ID, since) == Decimal("1.00")
    assert await repository.sum_cost_for_organization("org_other", since) == Decimal("0")
    assert (await repository.list_request_logs(ORG_ID))[0].request_id == "req_1"


@pytest.mark.asyncio
async def test_webhooks_and_deliveries(repository):
    enabled = WebhookRecord(
        organization_id=ORG_ID, url="https://a.example.com", events=["cost_event.created"], encrypted_secret="x", secret_hash="h"
    )
    paused = WebhookRecord(
        organization_id=ORG_ID,
        url="https://b.example.com",
        events=["cost_event.created"],
        encrypted_secret="x",
        secret_hash="h",
        enabled=False,
    )
    await repository.create_webhook(enabled)
    await repository.create_webhook(paused)

    matching = await repository.list_webhooks_for_event(ORG_ID, "cost_event.created")
    assert [w.id for w in matching] == [enabled.id]
    assert await repository.list_webhooks_for_event(ORG_ID, "ai_request.completed") == []

    await repository.add_webhook_delivery(
        WebhookDeliveryRecord(
            webhook_id=enabled.id,
            organization_id=ORG_ID,
            event_type="cost_event.created",
            status=DeliveryStatus.FAIL,
            attempt=1,
            delivery_id="d1",
            http_status=500,
        )
    )
    deliveries = await repository.list_webhook_deliveries(enabled.id)
    assert deliveries[0].status is DeliveryStatus.FAIL

    await repository.delete_webhook(paused.id)
    assert await repository.get_webhook(ORG_ID, paused.id) is None
    assert len(await repository.list_webhooks(ORG_ID)) == 1


@pytest.mark.asyncio
async def test_policies_round_trip(repository):
    active = await repository.create_policy(
        AiPolicyRecord(
            organization_id=ORG_ID,
            name="budget",
            blocked_models=["gpt-4o"],
            max_tokens_per_request=4000,
            max_cost_per_day_eur=Decimal("25.50"),
        )
    )
    paused = await repository.create_policy(AiPolicyRecord(organization_id=ORG_ID, name="paused", enabled=False))

    loaded = await repository.get_policy(ORG_ID, active.id)
    assert loaded is not None
    assert loaded.blocked_models == ["gpt-4o"]
    assert loaded.max_cost_per_day_eur == Decimal("25.50")
    assert await repository.get_policy("org_other", active.id) is None
    assert [p.id for p in await repository.list_policies(ORG_ID, enabled_only=True)] == [active.id]
    assert len(await repository.list_policies(ORG_ID)) == 2

    paused.enabled = True
    await repository.save_policy(paused)
    await repository.delete_policy(active.id)
    assert [p.name for p in await repository.list_policies(ORG_ID, enabled_only=True)] == ["paused"]
