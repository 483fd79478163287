from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from redis.exceptions import ConnectionError as RedisConnectionError

from pulse_gateway.billing import MeteringService, PricingTable
from pulse_gateway.config import AppConfig, Settings
from pulse_gateway.main import create_app, wire_services
from pulse_gateway.models.domain import (
    AiPolicyRecord,
    ConnectionStatus,
    CostEventRecord,
    GatewayKeyRecord,
    KeyStatus,
    ModelRouteRecord,
    OrganizationRecord,
    Provider,
    ProviderConnectionRecord,
    RequestLogRecord,
    WebhookDeliveryRecord,
    WebhookRecord,
)
from pulse_gateway.models.errors import GatewayError
from pulse_gateway.providers.base import ProviderAdapter, ProviderRequest, ProviderResponse, StreamDelta
from pulse_gateway.services import (
    CostGuard,
    EntitlementService,
    Gateway,
    KeyService,
    ModelRouter,
    PolicyService,
    RateLimiter,
)
from pulse_gateway.services.entitlements import Plan
from pulse_gateway.utils.encryption import CredentialVault
from pulse_gateway.webhooks import WebhookDispatcher

TEST_ENCRYPTION_KEY = "test-encryption-key"
TEST_MASTER_KEY = "test-master-key"
ORG_ID = "org_test"


class FakeRedis:
    def __init__(self) -> None:
        self.zset_store: dict[str, dict[str, float]] = {}
        self.expirations: dict[str, int] = {}

    async def zadd(self, key: str, mapping: dict[str, float]):
        items = self.zset_store.setdefault(key, {})
        for member, score in mapping.items():
            items[member] = float(score)
        return len(mapping)

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float):
        items = self.zset_store.get(key, {})
        removed = [m for m, s in items.items() if float(min_score) <= s <= float(max_score)]
        for member in removed:
            del items[member]
        return len(removed)

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False):
        ordered = sorted(self.zset_store.get(key, {}).items(), key=lambda item: item[1])
        stop = None if end == -1 else end + 1
        selected = ordered[start:stop]
        if withscores:
            return [(member, score) for member, score in selected]
        return [member for member, _ in selected]

    async def zcard(self, key: str):
        return len(self.zset_store.get(key, {}))

    async def expire(self, key: str, ttl: int):
        self.expirations[key] = ttl
        return True

    async def ping(self):
        return True

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self.redis = redis
        self.ops: list[tuple[str, tuple, dict]] = []

    def zadd(self, *args, **kwargs):
        self.ops.append(("zadd", args, kwargs))
        return self

    def zremrangebyscore(self, *args, **kwargs):
        self.ops.append(("zremrangebyscore", args, kwargs))
        return self

    def zrange(self, *args, **kwargs):
        self.ops.append(("zrange", args, kwargs))
        return self

    def zcard(self, *args, **kwargs):
        self.ops.append(("zcard", args, kwargs))
        return self

    def expire(self, *args, **kwargs):
        self.ops.append(("expire", args, kwargs))
        return self

    async def execute(self):
        results = []
        for name, args, kwargs in self.ops:
            result = await getattr(self.redis, name)(*args, **kwargs)
            results.append(result)
        self.ops.clear()
        return results


class UnreachableRedis:
    def pipeline(self) -> UnreachablePipeline:
        return UnreachablePipeline()


class UnreachablePipeline:
    def __getattr__(self, name: str):
        return lambda *args, **kwargs: self

    async def execute(self):
        raise RedisConnectionError("redis down")


class InMemoryStore:
    """Every repository method the services use, backed by dicts and lists."""

    def __init__(self) -> None:
        self.organizations: dict[str, OrganizationRecord] = {}
        self.keys: dict[str, GatewayKeyRecord] = {}
        self.connections: dict[str, ProviderConnectionRecord] = {}
        self.routes: dict[str, ModelRouteRecord] = {}
        self.policies: dict[str, AiPolicyRecord] = {}
        self.request_logs: list[RequestLogRecord] = []
        self.cost_events: list[CostEventRecord] = []
        self.webhooks: dict[str, WebhookRecord] = {}
        self.deliveries: list[WebhookDeliveryRecord] = []
        self.fail_request_logs = False
        self.fail_cost_events = False

    async def get_organization(self, organization_id: str) -> OrganizationRecord | None:
        return self.organizations.get(organization_id)

    async def save_organization(self, record: OrganizationRecord) -> OrganizationRecord:
        self.organizations[record.id] = record
        return record

    async def get_key_by_hash(self, key_hash: str) -> GatewayKeyRecord | None:
        for record in self.keys.values():
            if record.key_hash == key_hash:
                return replace(record)
        return None

    async def get_key(self, organization_id: str, key_id: str) -> GatewayKeyRecord | None:
        record = self.keys.get(key_id)
        if record is None or record.organization_id != organization_id:
            return None
        return replace(record)

    async def list_keys(self, organization_id: str) -> list[GatewayKeyRecord]:
        return [replace(r) for r in self.keys.values() if r.organization_id == organization_id]

    async def create_key(self, record: GatewayKeyRecord) -> GatewayKeyRecord:
        self.keys[record.id] = replace(record)
        return record

    async def save_key(self, record: GatewayKeyRecord) -> GatewayKeyRecord:
        self.keys[record.id] = replace(record)
        return record

    async def touch_key(self, key_id: str, when: datetime) -> None:
        if key_id in self.keys:
            self.keys[key_id].last_used_at = when

    async def count_keys(self, organization_id: str) -> int:
        return sum(
            1 for r in self.keys.values() if r.organization_id == organization_id and r.status == KeyStatus.ACTIVE
        )

    async def create_connection(self, record: ProviderConnectionRecord) -> ProviderConnectionRecord:
        self.connections[record.id] = replace(record)
        return record

    async def save_connection(self, record: ProviderConnectionRecord) -> ProviderConnectionRecord:
        self.connections[record.id] = replace(record)
        return record

    async def get_connection(self, organization_id: str, connection_id: str) -> ProviderConnectionRecord | None:
        record = self.connections.get(connection_id)
        if record is None or record.organization_id != organization_id:
            return None
        return replace(record)

    async def find_connection(
        self, organization_id: str, provider: Provider, name: str
    ) -> ProviderConnectionRecord | None:
        for record in self.connections.values():
            if (record.organization_id, record.provider, record.name) == (organization_id, provider, name):
                return replace(record)
        return None

    async def list_connections(self, organization_id: str) -> list[ProviderConnectionRecord]:
        return [replace(r) for r in self.connections.values() if r.organization_id == organization_id]

    async def get_active_connection(self, organization_id: str, provider: Provider) -> ProviderConnectionRecord | None:
        active = [
            r
            for r in self.connections.values()
            if r.organization_id == organization_id and r.provider == provider and r.status == ConnectionStatus.ACTIVE
        ]
        active.sort(key=lambda r: (r.created_at, r.id))
        return replace(active[0]) if active else None

    async def count_provider_connections(self, organization_id: str) -> int:
        return len(await self.list_connections(organization_id))

    async def create_route(self, record: ModelRouteRecord) -> ModelRouteRecord:
        self.routes[record.id] = replace(record)
        return record

    async def save_route(self, record: ModelRouteRecord) -> ModelRouteRecord:
        self.routes[record.id] = replace(record)
        return record

    async def get_route(self, organization_id: str, route_id: str) -> ModelRouteRecord | None:
        record = self.routes.get(route_id)
        if record is None or record.organization_id != organization_id:
            return None
        return replace(record)

    async def find_route(self, organization_id: str, provider: Provider, model: str) -> ModelRouteRecord | None:
        for record in self.routes.values():
            if (record.organization_id, record.provider, record.model) == (organization_id, provider, model):
                return replace(record)
        return None

    async def list_routes(self, organization_id: str) -> list[ModelRouteRecord]:
        routes = [replace(r) for r in self.routes.values() if r.organization_id == organization_id]
        return sorted(routes, key=lambda r: (r.priority, r.id))

    async def list_enabled_routes(self, organization_id: str, model: str) -> list[ModelRouteRecord]:
        return [r for r in await self.list_routes(organization_id) if r.model == model and r.enabled]

    async def count_model_routes(self, organization_id: str) -> int:
        return len(await self.list_routes(organization_id))

    async def add_request_log(self, record: RequestLogRecord) -> RequestLogRecord:
        if self.fail_request_logs:
            raise RuntimeError("request log store unavailable")
        self.request_logs.append(record)
        return record

    async def add_cost_event(self, record: CostEventRecord) -> CostEventRecord:
        if self.fail_cost_events:
            raise RuntimeError("cost ledger unavailable")
        for existing in self.cost_events:
            if existing.unique_hash == record.unique_hash:
                return existing
        self.cost_events.append(record)
        return record

    async def sum_cost_for_key(self, api_key_id: str, since: datetime) -> Decimal:
        return sum(
            (e.amount_eur for e in self.cost_events if e.api_key_id == api_key_id and e.occurred_at >= since),
            Decimal("0"),
        )

    async def sum_cost_for_organization(self, organization_id: str, since: datetime) -> Decimal:
        return sum(
            (
                e.amount_eur
                for e in self.cost_events
                if e.organization_id == organization_id and e.source == "AI" and e.occurred_at >= since
            ),
            Decimal("0"),
        )

    async def create_policy(self, record: AiPolicyRecord) -> AiPolicyRecord:
        self.policies[record.id] = replace(record)
        return record

    async def save_policy(self, record: AiPolicyRecord) -> AiPolicyRecord:
        self.policies[record.id] = replace(record)
        return record

    async def get_policy(self, organization_id: str, policy_id: str) -> AiPolicyRecord | None:
        record = self.policies.get(policy_id)
        if record is None or record.organization_id != organization_id:
            return None
        return replace(record)

    async def delete_policy(self, policy_id: str) -> None:
        self.policies.pop(policy_id, None)

    async def list_policies(self, organization_id: str, *, enabled_only: bool = False) -> list[AiPolicyRecord]:
        return [
            replace(r)
            for r in self.policies.values()
            if r.organization_id == organization_id and (r.enabled or not enabled_only)
        ]

    async def create_webhook(self, record: WebhookRecord) -> WebhookRecord:
        self.webhooks[record.id] = replace(record)
        return record

    async def save_webhook(self, record: WebhookRecord) -> WebhookRecord:
        self.webhooks[record.id] = replace(record)
        return record

    async def get_webhook(self, organization_id: str, webhook_id: str) -> WebhookRecord | None:
        record = self.webhooks.get(webhook_id)
        if record is None or record.organization_id != organization_id:
            return None
        return replace(record)

    async def delete_webhook(self, webhook_id: str) -> None:
        self.webhooks.pop(webhook_id, None)

    async def list_webhooks(self, organization_id: str) -> list[WebhookRecord]:
        return [replace(r) for r in self.webhooks.values() if r.organization_id == organization_id]

    async def list_webhooks_for_event(self, organization_id: str, event: str) -> list[WebhookRecord]:
        return [w for w in await self.list_webhooks(organization_id) if w.enabled and event in w.events]

    async def add_webhook_delivery(self, record: WebhookDeliveryRecord) -> WebhookDeliveryRecord:
        self.deliveries.append(record)
        return record


class RecordingAdapter(ProviderAdapter):
    """Provider adapter double that records calls instead of touching the network."""

    provider = Provider.OPENAI
    display_name = "Recording"
    default_api_base = "https://provider.test/v1"
    health_check_model = "test-model"

    def __init__(self, provider: Provider = Provider.OPENAI, supports_streaming: bool = False) -> None:
        super().__init__(http_client=None)  # type: ignore[arg-type]
        self.provider = provider
        self.supports_streaming = supports_streaming
        self.calls: list[tuple[str, ProviderRequest]] = []
        self.response = ProviderResponse(content="Hello there", input_tokens=4, output_tokens=3)
        self.error: Exception | None = None
        self.stream_deltas: list[StreamDelta] = [
            StreamDelta(text="Hel"),
            StreamDelta(text="lo"),
            StreamDelta(done=True, input_tokens=4, output_tokens=2),
        ]
        self.stream_error: GatewayError | None = None
        self.stream_closed = asyncio.Event()

    def endpoint(self, request: ProviderRequest) -> str:
        return f"{self.api_base}/chat/completions"

    def build_headers(self, secret: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {secret}"}

    def build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        return {"model": request.model, "messages": request.messages}

    def parse_response(self, data: dict[str, Any], request: ProviderRequest) -> ProviderResponse:
        return self.response

    async def invoke(self, secret: str, request: ProviderRequest, timeout: float | None = None) -> ProviderResponse:
        self.calls.append((secret, request))
        if self.error is not None:
            raise self.error
        return self.response

    async def stream(self, secret: str, request: ProviderRequest) -> AsyncIterator[StreamDelta]:
        self.calls.append((secret, request))
        try:
            for delta in self.stream_deltas:
                await asyncio.sleep(0)
                yield delta
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed.set()


async def noop_sleep(_: float) -> None:
    return None


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.organizations[ORG_ID] = OrganizationRecord(id=ORG_ID, name="Acme", plan=Plan.BUSINESS.value)
    return store


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def adapter() -> RecordingAdapter:
    return RecordingAdapter()


@pytest.fixture
def pricing() -> PricingTable:
    return PricingTable()


@pytest.fixture
async def webhook_http():
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        client.received = received  # type: ignore[attr-defined]
        yield client


@pytest.fixture
def dispatcher(store, vault, webhook_http) -> WebhookDispatcher:
    return WebhookDispatcher(store, vault, webhook_http, sleep=noop_sleep)


@pytest.fixture
def key_service(store) -> KeyService:
    return KeyService(store, EntitlementService(store))


@pytest.fixture
def gateway(store, vault, fake_redis, adapter, pricing, dispatcher, key_service) -> Gateway:
    return Gateway(
        key_service=key_service,
        rate_limiter=RateLimiter(redis_client=fake_redis),
        cost_guard=CostGuard(store),
        router=ModelRouter(store, vault),
        adapters={provider: adapter for provider in Provider},
        metering=MeteringService(store, pricing, dispatcher),
        organizations=store,
        pricing=pricing,
        policies=PolicyService(store),
    )


async def add_connection(
    store: InMemoryStore,
    vault: CredentialVault,
    provider: Provider = Provider.OPENAI,
    secret: str = "sk-provider-secret-1234",
    name: str = "default",
) -> ProviderConnectionRecord:
    sealed = vault.encrypt(secret)
    return await store.create_connection(
        ProviderConnectionRecord(
            organization_id=ORG_ID,
            provider=provider,
            name=name,
            encrypted_secret=sealed.ciphertext,
            secret_last4=sealed.last4,
        )
    )


async def add_route(
    store: InMemoryStore,
    model: str = "gpt-4o-mini",
    provider: Provider = Provider.OPENAI,
    priority: int = 100,
    **fields: Any,
) -> ModelRouteRecord:
    return await store.create_route(
        ModelRouteRecord(organization_id=ORG_ID, provider=provider, model=model, priority=priority, **fields)
    )


@pytest.fixture
async def routed(store, vault) -> ModelRouteRecord:
    await add_connection(store, vault)
    return await add_route(store)


@pytest.fixture
async def issued(key_service):
    return await key_service.issue_key(ORG_ID, created_by_user_id="user_1", label="ci")


@pytest.fixture
async def test_app(store, fake_redis, adapter, webhook_http) -> FastAPI:
    app = create_app()
    settings = Settings(master_key=TEST_MASTER_KEY, encryption_key=TEST_ENCRYPTION_KEY)
    wire_services(
        app,
        settings=settings,
        config=AppConfig(),
        repository=store,
        http_client=webhook_http,
        redis_client=fake_redis,
    )
    app.state.adapters = {provider: adapter for provider in Provider}
    app.state.gateway.adapters = app.state.adapters
    app.state.connection_service.adapters = app.state.adapters
    app.state.webhook_dispatcher.sleep = noop_sleep
    return app


@pytest.fixture
async def client(test_app: FastAPI):
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_MASTER_KEY}", "x-pulse-org": ORG_ID}
