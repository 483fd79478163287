from __future__ import annotations

import json
from decimal import Decimal

import pytest

from conftest import ORG_ID
from pulse_gateway.billing import MeteringService
from pulse_gateway.billing.metering import CallOutcome, cost_event_hash
from pulse_gateway.models.domain import Attribution
from pulse_gateway.models.errors import ProviderError, RateLimitError
from pulse_gateway.services.entitlements import EntitlementService
from pulse_gateway.services.key_service import AuthenticatedKey
from pulse_gateway.webhooks import AI_REQUEST_COMPLETED, COST_EVENT_CREATED, WebhookService

KEY = AuthenticatedKey(id="key_1", organization_id=ORG_ID, key_prefix="pulse_key_ab", created_by_user_id="user_1")


def outcome(**fields) -> CallOutcome:
    values = {
        "request_id": "req_1",
        "key": KEY,
        "model": "gpt-4o-mini",
        "provider": "openai",
        "input_tokens": 4,
        "output_tokens": 3,
        "attribution": Attribution(app_id="billing-bot", team_id="core"),
    }
    values.update(fields)
    return CallOutcome(**values)


@pytest.fixture
def metering(store, pricing, dispatcher) -> MeteringService:
    return MeteringService(store, pricing, dispatcher)


@pytest.mark.asyncio
async def test_success_writes_log_and_cost_event(store, metering, dispatcher):
    receipt = await metering.record(outcome())
    await dispatcher.drain()

    assert len(store.request_logs) == 1
    assert len(store.cost_events) == 1
    log = store.request_logs[0]
    event = store.cost_events[0]
    assert log.total_tokens == 7
    assert log.app_id == "billing-bot"
    assert log.user_id == "user_1"
    assert event.request_log_id == log.id
    assert event.quantity == 7
    assert event.amount_eur == receipt.cost_eur == Decimal("0.00000240")
    assert event.dimensions == {"app": "billing-bot", "team": "core", "model": "gpt-4o-mini", "user": "user_1"}
    assert event.occurred_at == log.created_at


@pytest.mark.asyncio
async def test_failure_costs_nothing_by_default(store, metering):
    error = ProviderError("boom", upstream_status=500, provider="openai")

    receipt = await metering.record(outcome(error=error, status_code=502, output_tokens=0))

    assert receipt.cost_eur == Decimal("0")
    assert receipt.cost_event is None
    assert store.request_logs[0].error_code == "provider_error"
    assert store.request_logs[0].status_code == 502
    assert store.cost_events == []


@pytest.mark.asyncio
async def test_partial_policy_bills_consumed_tokens(store, pricing):
    metering = MeteringService(store, pricing, failure_cost_policy="partial")

    receipt = await metering.record(outcome(error=ProviderError("cut off"), status_code=502))

    assert receipt.cost_eur > 0
    assert len(store.cost_events) == 1


def test_unknown_failure_policy_is_rejected(store, pricing):
    with pytest.raises(ValueError):
        MeteringService(store, pricing, failure_cost_policy="everything")


@pytest.mark.asyncio
async def test_rejected_request_is_logged_without_cost(store, vault, metering, dispatcher, webhook_http):
    await WebhookService(store, vault, EntitlementService(store), dispatcher).create_webhook(
        ORG_ID, "https://hooks.example.com/pulse", [AI_REQUEST_COMPLETED]
    )

    receipt = await metering.record(
        outcome(reached_provider=False, provider=None, error=RateLimitError(), status_code=429, input_tokens=0, output_tokens=0)
    )
    await dispatcher.drain()

    assert receipt.cost_eur == Decimal("0")
    assert store.request_logs[0].status_code == 429
    assert store.request_logs[0].error_code == "rate_limit_exceeded"
    assert store.cost_events == []
    assert webhook_http.received == []


@pytest.mark.asyncio
async def test_rejected_request_logging_can_be_disabled(store, pricing):
    metering = MeteringService(store, pricing, log_rejected_requests=False)

    assert await metering.record(outcome(reached_provider=False, error=RateLimitError(), status_code=429)) is None
    assert store.request_logs == []


@pytest.mark.asyncio
async def test_request_log_failure_does_not_raise(store, metering):
    store.fail_request_logs = True

    receipt = await metering.record(outcome())

    assert receipt.request_log is None
    assert receipt.cost_event is None
    assert store.cost_events == []


@pytest.mark.asyncio
async def test_cost_event_failure_keeps_request_log(store, metering):
    store.fail_cost_events = True

    receipt = await metering.record(outcome())

    assert receipt.request_log is not None
    assert receipt.cost_event is None
    assert len(store.request_logs) == 1


def test_cost_event_hash_is_stable():
    first = cost_event_hash(ORG_ID, "req_1", "log_1", 7, Decimal("0.1"))

    assert first == cost_event_hash(ORG_ID, "req_1", "log_1", 7, Decimal("0.1"))
    assert first != cost_event_hash(ORG_ID, "req_2", "log_1", 7, Decimal("0.1"))


@pytest.mark.asyncio
async def test_duplicate_cost_event_is_not_written_twice(store, metering):
    receipt = await metering.record(outcome())
    duplicate = receipt.cost_event.__class__(
        organization_id=ORG_ID,
        amount_eur=receipt.cost_eur,
        quantity=7,
        unique_hash=receipt.cost_event.unique_hash,
    )

    stored = await store.add_cost_event(duplicate)

    assert stored.id == receipt.cost_event.id
    assert len(store.cost_events) == 1


@pytest.mark.asyncio
async def test_success_dispatches_both_events(store, vault, metering, dispatcher, webhook_http):
    await WebhookService(store, vault, EntitlementService(store), dispatcher).create_webhook(
        ORG_ID, "https://hooks.example.com/pulse", [AI_REQUEST_COMPLETED, COST_EVENT_CREATED]
    )

    await metering.record(outcome())
    await dispatcher.drain()

    bodies = [json.loads(request.content) for request in webhook_http.received]
    assert sorted(body["event"] for body in bodies) == [AI_REQUEST_COMPLETED, COST_EVENT_CREATED]
    completed = next(body for body in bodies if body["event"] == AI_REQUEST_COMPLETED)
    assert completed["orgId"] == ORG_ID
    assert completed["data"]["totalTokens"] == 7
    assert completed["data"]["attribution"] == {"app": "billing-bot", "team": "core"}
