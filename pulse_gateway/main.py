from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI
from redis.asyncio import Redis

from pulse_gateway import __version__
from pulse_gateway.billing import MeteringService, PricingTable
from pulse_gateway.config import AppConfig, Settings, get_settings, load_yaml_config
from pulse_gateway.db import Repository, create_engine, create_session_factory, create_tables
from pulse_gateway.middleware.errors import register_exception_handlers
from pulse_gateway.providers import build_adapters
from pulse_gateway.routers import (
    admin_router,
    chat_router,
    health_router,
    metrics_router,
    models_router,
    responses_router,
)
from pulse_gateway.services import (
    ConnectionService,
    CostGuard,
    EntitlementService,
    Gateway,
    KeyService,
    ModelRouter,
    PolicyService,
    RateLimiter,
)
from pulse_gateway.utils.encryption import CredentialVault
from pulse_gateway.webhooks import WebhookDispatcher, WebhookService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def wire_services(
    app: FastAPI,
    *,
    settings: Settings,
    config: AppConfig,
    repository: Any,
    http_client: httpx.AsyncClient,
    redis_client: Any | None = None,
) -> None:
    """Build every gateway service and attach it to ``app.state``."""
    vault = CredentialVault(settings.encryption_key)
    adapters = build_adapters(
        http_client,
        timeout=config.gateway.provider_timeout_seconds,
        api_bases=config.gateway.api_bases,
    )
    pricing = PricingTable.from_config(config.pricing)
    entitlements = EntitlementService(repository, default_plan=settings.default_plan)
    dispatcher = WebhookDispatcher(
        repository,
        vault,
        http_client,
        max_attempts=config.webhooks.max_attempts,
        backoff_base=config.webhooks.backoff_base_seconds,
        timeout=config.webhooks.timeout_seconds,
    )
    metering = MeteringService(
        repository,
        pricing,
        dispatcher,
        failure_cost_policy=config.metering.failure_cost_policy,
        log_rejected_requests=config.metering.log_rejected_requests,
    )
    key_service = KeyService(repository, entitlements)
    policies = PolicyService(repository)

    app.state.settings = settings
    app.state.app_config = config
    app.state.repository = repository
    app.state.redis = redis_client
    app.state.http_client = http_client
    app.state.vault = vault
    app.state.adapters = adapters
    app.state.pricing = pricing
    app.state.entitlement_service = entitlements
    app.state.webhook_dispatcher = dispatcher
    app.state.metering_service = metering
    app.state.key_service = key_service
    app.state.policy_service = policies
    app.state.connection_service = ConnectionService(
        repository,
        vault,
        entitlements,
        adapters,
        health_check_timeout=config.gateway.health_check_timeout_seconds,
    )
    app.state.webhook_service = WebhookService(repository, vault, entitlements, dispatcher)
    app.state.gateway = Gateway(
        key_service=key_service,
        rate_limiter=RateLimiter(redis_client=redis_client, window_seconds=config.rate_limit.window_seconds),
        cost_guard=CostGuard(repository),
        router=ModelRouter(repository, vault),
        adapters=adapters,
        metering=metering,
        organizations=repository,
        pricing=pricing,
        policies=policies,
        failover_enabled=config.routing.failover_enabled,
        default_output_tokens=config.gateway.default_output_tokens,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    config = load_yaml_config(settings.config_path)

    redis_client: Redis | None = None
    if settings.redis_url:
        redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    else:
        logger.warning("no redis_url configured, rate limits are tracked per process")

    engine = create_engine(settings.database_url)
    await create_tables(engine)
    app.state.engine = engine
    http_client = httpx.AsyncClient(timeout=config.gateway.provider_timeout_seconds)

    wire_services(
        app,
        settings=settings,
        config=config,
        repository=Repository(create_session_factory(engine)),
        http_client=http_client,
        redis_client=redis_client,
    )

    logger.info("application startup complete", extra={"app_env": settings.app_env})
    try:
        yield
    finally:
        await app.state.gateway.drain()
        await http_client.aclose()
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(title="Pulse AI Gateway", version=__version__, lifespan=lifespan)
    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(chat_router)
    app.include_router(responses_router)
    app.include_router(models_router)
    app.include_router(admin_router)
    return app


app = create_app()
