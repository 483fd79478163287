from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pulse_gateway.models.domain import ModelRouteRecord, Provider, ProviderConnectionRecord
from pulse_gateway.models.errors import RoutingError
from pulse_gateway.utils.encryption import CredentialVault, EncryptionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteTarget:
    """A route, its active connection and the decrypted secret, valid for one request."""

    route: ModelRouteRecord
    connection: ProviderConnectionRecord
    secret: str = field(repr=False)

    @property
    def provider(self) -> Provider:
        return Provider(self.route.provider)

    @property
    def model(self) -> str:
        return self.route.model


class ModelRouter:
    def __init__(self, repository: Any, vault: CredentialVault) -> None:
        self.repository = repository
        self.vault = vault

    async def candidates(self, organization_id: str, model: str) -> list[ModelRouteRecord]:
        routes = await self.repository.list_enabled_routes(organization_id, model)
        return sorted((r for r in routes if r.enabled), key=lambda r: (r.priority, r.id))

    async def resolve(self, organization_id: str, model: str) -> RouteTarget:
        routes = await self.candidates(organization_id, model)
        if not routes:
            raise RoutingError("no_route", model=model)
        return await self._target(organization_id, routes[0])

    async def resolve_chain(self, organization_id: str, model: str) -> list[RouteTarget]:
        """All usable targets in priority order, for failover.

        Routes without an active connection are skipped; the first route's
        error is raised when none are usable.
        """
        routes = await self.candidates(organization_id, model)
        if not routes:
            raise RoutingError("no_route", model=model)

        targets: list[RouteTarget] = []
        first_error: RoutingError | None = None
        for route in routes:
            try:
                targets.append(await self._target(organization_id, route))
            except RoutingError as exc:
                first_error = first_error or exc
        if not targets:
            raise first_error or RoutingError("no_route", model=model)
        return targets

    async def _target(self, organization_id: str, route: ModelRouteRecord) -> RouteTarget:
        provider = Provider(route.provider)
        connection = await self.repository.get_active_connection(organization_id, provider)
        if connection is None:
            raise RoutingError("no_active_connection", model=route.model, provider=provider.value)
        try:
            secret = self.vault.decrypt(connection.encrypted_secret)
        except EncryptionError:
            logger.error(
                "provider connection secret could not be decrypted",
                extra={"connection_id": connection.id, "provider": provider.value},
            )
            raise RoutingError("connection_unreadable", model=route.model, provider=provider.value) from None
        return RouteTarget(route=route, connection=connection, secret=secret)
