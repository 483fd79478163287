from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pulse_gateway.billing.pricing import PricingTable
from pulse_gateway.metrics import (
    increment_metering_write_failure,
    increment_request,
    increment_request_failure,
    increment_spend,
    increment_usage,
    observe_request_latency,
)
from pulse_gateway.models.domain import Attribution, CostEventRecord, RequestLogRecord
from pulse_gateway.models.errors import GatewayError
from pulse_gateway.webhooks.service import AI_REQUEST_COMPLETED, COST_EVENT_CREATED

if TYPE_CHECKING:
    from pulse_gateway.services.key_service import AuthenticatedKey

logger = logging.getLogger(__name__)

FAILURE_COST_POLICIES = ("zero", "partial")


@dataclass(frozen=True)
class CallOutcome:
    """Everything metering needs to know about one finished call attempt.

    ``reached_provider`` is False for calls rejected before a provider was
    contacted (restriction, limits, routing); those are never billed.
    """

    request_id: str
    key: AuthenticatedKey
    model: str
    attribution: Attribution = Attribution()
    provider: str | None = None
    prompt_hash: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    status_code: int = 200
    error: GatewayError | None = None
    reached_provider: bool = True
    source: str = "chat.completions"
    streamed: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MeteringReceipt:
    request_log: RequestLogRecord | None
    cost_event: CostEventRecord | None
    cost_eur: Decimal


def cost_event_hash(organization_id: str, request_id: str, request_log_id: str, total_tokens: int, cost: Decimal) -> str:
    material = f"{organization_id}|{request_id}|{request_log_id}|{total_tokens}|{cost}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class MeteringService:
    def __init__(
        self,
        repository: Any,
        pricing: PricingTable,
        dispatcher: Any | None = None,
        *,
        failure_cost_policy: str = "zero",
        log_rejected_requests: bool = True,
    ) -> None:
        if failure_cost_policy not in FAILURE_COST_POLICIES:
            raise ValueError(f"failure_cost_policy must be one of {FAILURE_COST_POLICIES}")
        self.repository = repository
        self.pricing = pricing
        self.dispatcher = dispatcher
        self.failure_cost_policy = failure_cost_policy
        self.log_rejected_requests = log_rejected_requests

    def price(self, outcome: CallOutcome) -> Decimal:
        if not outcome.reached_provider:
            return Decimal("0")
        if not outcome.succeeded and self.failure_cost_policy == "zero":
            return Decimal("0")
        return self.pricing.estimate_cost(outcome.model, outcome.input_tokens, outcome.output_tokens)

    async def record(self, outcome: CallOutcome) -> MeteringReceipt | None:
        if not outcome.reached_provider and not self.log_rejected_requests:
            return None

        cost = self.price(outcome)
        self._observe(outcome, cost)

        request_log = self._request_log(outcome, cost)
        try:
            request_log = await self.repository.add_request_log(request_log)
        except Exception:
            logger.exception("failed to write request log", extra={"request_id": outcome.request_id})
            increment_metering_write_failure("request_log")
            return MeteringReceipt(request_log=None, cost_event=None, cost_eur=cost)

        cost_event: CostEventRecord | None = None
        if outcome.reached_provider and (outcome.succeeded or cost > 0):
            cost_event = await self._write_cost_event(outcome, request_log, cost)

        if outcome.reached_provider and self.dispatcher is not None:
            self.dispatcher.dispatch(outcome.key.organization_id, AI_REQUEST_COMPLETED, self._event_data(outcome, request_log))
            if cost_event is not None:
                self.dispatcher.dispatch(
                    outcome.key.organization_id,
                    COST_EVENT_CREATED,
                    {
                        "costEventId": cost_event.id,
                        "requestLogId": request_log.id,
                        "amountEur": str(cost_event.amount_eur),
                        "currency": cost_event.currency,
                        "provider": cost_event.provider,
                        "quantity": cost_event.quantity,
                        "dimensions": cost_event.dimensions,
                    },
                )

        return MeteringReceipt(request_log=request_log, cost_event=cost_event, cost_eur=cost)

    def _request_log(self, outcome: CallOutcome, cost: Decimal) -> RequestLogRecord:
        attribution = outcome.attribution
        return RequestLogRecord(
            request_id=outcome.request_id,
            organization_id=outcome.key.organization_id,
            api_key_id=outcome.key.id,
            user_id=outcome.key.created_by_user_id,
            team_id=attribution.team_id,
            project_id=attribution.project_id,
            app_id=attribution.app_id,
            client_id=attribution.client_id,
            provider=outcome.provider,
            model=outcome.model,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            total_tokens=outcome.total_tokens,
            estimated_cost_eur=cost,
            latency_ms=outcome.latency_ms,
            status_code=outcome.status_code,
            prompt_hash=outcome.prompt_hash,
            error_code=outcome.error.code if outcome.error else None,
            error_message=outcome.error.message if outcome.error else None,
            source=outcome.source,
            streamed=outcome.streamed,
        )

    async def _write_cost_event(
        self, outcome: CallOutcome, request_log: RequestLogRecord, cost: Decimal
    ) -> CostEventRecord | None:
        dimensions: dict[str, Any] = {**outcome.attribution.as_dimensions(), "model": outcome.model}
        if outcome.key.created_by_user_id:
            dimensions["user"] = outcome.key.created_by_user_id
        event = CostEventRecord(
            organization_id=outcome.key.organization_id,
            api_key_id=outcome.key.id,
            request_log_id=request_log.id,
            amount_eur=cost,
            provider=outcome.provider,
            service=outcome.model,
            quantity=outcome.total_tokens,
            dimensions=dimensions,
            unique_hash=cost_event_hash(
                outcome.key.organization_id, outcome.request_id, request_log.id, outcome.total_tokens, cost
            ),
            occurred_at=request_log.created_at,
        )
        try:
            return await self.repository.add_cost_event(event)
        except Exception:
            logger.exception(
                "failed to write cost event",
                extra={"request_id": outcome.request_id, "request_log_id": request_log.id, "amount_eur": str(cost)},
            )
            increment_metering_write_failure("cost_event")
            return None

    @staticmethod
    def _event_data(outcome: CallOutcome, request_log: RequestLogRecord) -> dict[str, Any]:
        return {
            "requestId": outcome.request_id,
            "requestLogId": request_log.id,
            "apiKeyId": outcome.key.id,
            "provider": outcome.provider,
            "model": outcome.model,
            "statusCode": outcome.status_code,
            "inputTokens": outcome.input_tokens,
            "outputTokens": outcome.output_tokens,
            "totalTokens": outcome.total_tokens,
            "costEur": str(request_log.estimated_cost_eur),
            "latencyMs": outcome.latency_ms,
            "streamed": outcome.streamed,
            "errorCode": outcome.error.code if outcome.error else None,
            "attribution": outcome.attribution.as_dimensions(),
        }

    @staticmethod
    def _observe(outcome: CallOutcome, cost: Decimal) -> None:
        increment_request(model=outcome.model, api_provider=outcome.provider, status_code=outcome.status_code)
        observe_request_latency(
            model=outcome.model,
            api_provider=outcome.provider,
            status_code=outcome.status_code,
            latency_seconds=outcome.latency_ms / 1000,
        )
        if outcome.error is not None:
            increment_request_failure(model=outcome.model, api_provider=outcome.provider, error_type=outcome.error.error_type)
        if outcome.reached_provider:
            increment_usage(
                model=outcome.model,
                api_provider=outcome.provider,
                input_tokens=outcome.input_tokens,
                output_tokens=outcome.output_tokens,
            )
            increment_spend(model=outcome.model, api_provider=outcome.provider, amount_eur=cost)
