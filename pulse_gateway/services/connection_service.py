from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from pulse_gateway.models.domain import (
    ConnectionStatus,
    ModelRouteRecord,
    Provider,
    ProviderConnectionRecord,
)
from pulse_gateway.models.errors import ConflictError, GatewayError, NotFoundError, RoutingError
from pulse_gateway.providers.base import ProviderAdapter
from pulse_gateway.utils.encryption import CredentialVault, EncryptionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionTestResult:
    ok: bool
    latency_ms: int
    error: str | None = None
    code: str | None = None


class ConnectionService:
    """Administration of provider connections and model routes."""

    def __init__(
        self,
        repository: Any,
        vault: CredentialVault,
        entitlements: Any,
        adapters: dict[Provider, ProviderAdapter],
        health_check_timeout: float = 10.0,
    ) -> None:
        self.repository = repository
        self.vault = vault
        self.entitlements = entitlements
        self.adapters = adapters
        self.health_check_timeout = health_check_timeout

    async def create_connection(
        self,
        organization_id: str,
        provider: Provider,
        name: str,
        secret: str,
    ) -> ProviderConnectionRecord:
        if await self.repository.find_connection(organization_id, provider, name) is not None:
            raise ConflictError(f"A {provider.value} connection named '{name}' already exists", param="name")
        await self.entitlements.assert_can_create(organization_id, "ai_routing_providers")

        sealed = self.vault.encrypt(secret)
        record = ProviderConnectionRecord(
            organization_id=organization_id,
            provider=provider,
            name=name,
            encrypted_secret=sealed.ciphertext,
            secret_last4=sealed.last4,
        )
        record = await self.repository.create_connection(record)
        logger.info(
            "provider connection created",
            extra={"connection_id": record.id, "provider": provider.value, "organization_id": organization_id},
        )
        return record

    async def set_connection_status(
        self, organization_id: str, connection_id: str, status: ConnectionStatus
    ) -> ProviderConnectionRecord:
        record = await self._connection(organization_id, connection_id)
        record.status = status
        return await self.repository.save_connection(record)

    async def list_connections(self, organization_id: str) -> list[ProviderConnectionRecord]:
        return await self.repository.list_connections(organization_id)

    async def test_connection(self, organization_id: str, connection_id: str) -> ConnectionTestResult:
        record = await self._connection(organization_id, connection_id)
        adapter = self.adapters[Provider(record.provider)]
        started = time.perf_counter()
        try:
            secret = self.vault.decrypt(record.encrypted_secret)
            await adapter.health_check(secret, timeout=self.health_check_timeout)
        except EncryptionError:
            error = RoutingError("connection_unreadable", provider=Provider(record.provider).value)
            return ConnectionTestResult(ok=False, latency_ms=_elapsed_ms(started), error=error.message, code=error.code)
        except GatewayError as exc:
            logger.info(
                "provider connection test failed",
                extra={"connection_id": record.id, "provider": adapter.provider.value, "code": exc.code},
            )
            return ConnectionTestResult(ok=False, latency_ms=_elapsed_ms(started), error=exc.message, code=exc.code)
        return ConnectionTestResult(ok=True, latency_ms=_elapsed_ms(started))

    async def create_route(
        self,
        organization_id: str,
        provider: Provider,
        model: str,
        *,
        priority: int = 100,
        enabled: bool = True,
        max_cost_per_request_eur: Decimal | None = None,
    ) -> ModelRouteRecord:
        if await self.repository.find_route(organization_id, provider, model) is not None:
            raise ConflictError(f"A {provider.value} route for model '{model}' already exists", param="model")
        await self.entitlements.assert_can_create(organization_id, "ai_routing_routes")

        record = ModelRouteRecord(
            organization_id=organization_id,
            provider=provider,
            model=model,
            priority=priority,
            enabled=enabled,
            max_cost_per_request_eur=max_cost_per_request_eur,
        )
        return await self.repository.create_route(record)

    async def update_route(self, organization_id: str, route_id: str, **changes: Any) -> ModelRouteRecord:
        record = await self.repository.get_route(organization_id, route_id)
        if record is None:
            raise NotFoundError("Model route not found", param="route_id")
        for name in ("priority", "enabled", "max_cost_per_request_eur"):
            if name in changes:
                setattr(record, name, changes[name])
        return await self.repository.save_route(record)

    async def list_routes(self, organization_id: str) -> list[ModelRouteRecord]:
        return await self.repository.list_routes(organization_id)

    async def routable_models(self, organization_id: str) -> list[ModelRouteRecord]:
        """Enabled routes whose provider has an active connection, one per model."""
        routes = sorted(await self.repository.list_routes(organization_id), key=lambda r: (r.priority, r.id))
        connections = await self.repository.list_connections(organization_id)
        active = {Provider(c.provider) for c in connections if c.status == ConnectionStatus.ACTIVE}
        seen: dict[str, ModelRouteRecord] = {}
        for route in routes:
            if route.enabled and Provider(route.provider) in active and route.model not in seen:
                seen[route.model] = route
        return list(seen.values())

    async def _connection(self, organization_id: str, connection_id: str) -> ProviderConnectionRecord:
        record = await self.repository.get_connection(organization_id, connection_id)
        if record is None:
            raise NotFoundError("Provider connection not found", param="connection_id")
        return record


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
