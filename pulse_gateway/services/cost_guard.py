from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from pulse_gateway.models.domain import ModelRouteRecord, utcnow
from pulse_gateway.models.errors import QuotaError
from pulse_gateway.services.key_service import AuthenticatedKey

logger = logging.getLogger(__name__)


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(now: datetime) -> datetime:
    return day_start(now).replace(day=1)


class CostGuard:
    """Pre-call spend ceilings per key, summed from the cost ledger."""

    def __init__(self, repository: Any, clock: Callable[[], datetime] = utcnow) -> None:
        self.repository = repository
        self.clock = clock

    async def check(self, key: AuthenticatedKey) -> None:
        now = self.clock()
        windows = (
            ("daily", key.daily_cost_limit_eur, day_start(now)),
            ("monthly", key.monthly_cost_limit_eur, month_start(now)),
        )
        for period, limit, since in windows:
            if not limit:
                continue
            spent = Decimal(await self.repository.sum_cost_for_key(key.id, since))
            if spent >= limit:
                logger.info(
                    "cost limit exceeded",
                    extra={"key_id": key.id, "period": period, "limit": str(limit), "spent": str(spent)},
                )
                raise QuotaError(
                    f"{period.capitalize()} cost limit of {limit} EUR reached for this API key",
                    period=period,
                    limit=limit,
                    current=spent,
                )

    @staticmethod
    def check_route_ceiling(route: ModelRouteRecord, estimated_cost: Decimal) -> None:
        ceiling = route.max_cost_per_request_eur
        if ceiling is None or estimated_cost <= ceiling:
            return
        raise QuotaError(
            f"Estimated request cost {estimated_cost} EUR exceeds the route limit of {ceiling} EUR",
            code="route_cost_limit_exceeded",
            period="request",
            limit=ceiling,
            current=estimated_cost,
        )
