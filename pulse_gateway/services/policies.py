"""Organization-wide AI policies.

Policies apply to every key in an organization, on top of the key's own
restrictions. Each enabled policy may block models, restrict calls to an
allow-list, cap the estimated tokens of one request, cap the organization's
AI spend per UTC day, or require app attribution.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from pulse_gateway.models.domain import AiPolicyRecord, utcnow
from pulse_gateway.models.errors import NotFoundError, QuotaError, RestrictionError
from pulse_gateway.services.cost_guard import day_start

logger = logging.getLogger(__name__)

_UPDATABLE = (
    "name",
    "allowed_models",
    "blocked_models",
    "max_tokens_per_request",
    "max_cost_per_day_eur",
    "require_attribution",
    "enabled",
)


@dataclass(frozen=True)
class PolicyCheck:
    organization_id: str
    model: str
    estimated_tokens: int
    estimated_cost_eur: Decimal


class PolicyService:
    def __init__(self, repository: Any, clock: Callable[[], datetime] = utcnow) -> None:
        self.repository = repository
        self.clock = clock

    async def active_policies(self, organization_id: str) -> list[AiPolicyRecord]:
        return await self.repository.list_policies(organization_id, enabled_only=True)

    @staticmethod
    def requires_attribution(policies: Iterable[AiPolicyRecord]) -> bool:
        return any(policy.require_attribution for policy in policies)

    async def check(self, request: PolicyCheck, policies: list[AiPolicyRecord] | None = None) -> None:
        """Raise when any enabled policy rejects the call.

        Block lists are checked across every policy before allow-lists, then
        token caps, then the daily spend cap.
        """
        if policies is None:
            policies = await self.active_policies(request.organization_id)
        if not policies:
            return

        model = request.model
        for policy in policies:
            if model in policy.blocked_models:
                raise RestrictionError(
                    model,
                    message=f"Model '{model}' is blocked by policy '{policy.name}'",
                    code="policy_model_blocked",
                )
        for policy in policies:
            if policy.allowed_models and model not in policy.allowed_models:
                raise RestrictionError(
                    model,
                    message=f"Model '{model}' is not in the allow-list of policy '{policy.name}'",
                    code="policy_model_not_allowed",
                )

        for policy in policies:
            cap = policy.max_tokens_per_request
            if cap and request.estimated_tokens > cap:
                raise RestrictionError(
                    model,
                    message=f"Estimated {request.estimated_tokens} tokens exceed the limit of {cap} set by policy '{policy.name}'",
                    code="policy_token_limit_exceeded",
                    param="max_tokens",
                )

        capped = [policy for policy in policies if policy.max_cost_per_day_eur]
        if not capped:
            return
        spent = Decimal(await self.repository.sum_cost_for_organization(request.organization_id, day_start(self.clock())))
        projected = spent + request.estimated_cost_eur
        for policy in capped:
            limit = policy.max_cost_per_day_eur
            if projected > limit:
                logger.info(
                    "organization daily cost policy exceeded",
                    extra={"organization_id": request.organization_id, "policy_id": policy.id, "limit": str(limit)},
                )
                raise QuotaError(
                    f"Daily cost limit of {limit} EUR set by policy '{policy.name}' would be exceeded",
                    code="policy_cost_limit_exceeded",
                    period="daily",
                    limit=limit,
                    current=projected,
                )

    async def create_policy(self, organization_id: str, name: str, **settings: Any) -> AiPolicyRecord:
        record = AiPolicyRecord(organization_id=organization_id, name=name)
        _apply(record, settings)
        record = await self.repository.create_policy(record)
        logger.info("ai policy created", extra={"policy_id": record.id, "organization_id": organization_id})
        return record

    async def update_policy(self, organization_id: str, policy_id: str, **changes: Any) -> AiPolicyRecord:
        record = await self._policy(organization_id, policy_id)
        _apply(record, changes)
        return await self.repository.save_policy(record)

    async def delete_policy(self, organization_id: str, policy_id: str) -> None:
        record = await self._policy(organization_id, policy_id)
        await self.repository.delete_policy(record.id)
        logger.info("ai policy deleted", extra={"policy_id": record.id, "organization_id": organization_id})

    async def list_policies(self, organization_id: str) -> list[AiPolicyRecord]:
        return await self.repository.list_policies(organization_id)

    async def _policy(self, organization_id: str, policy_id: str) -> AiPolicyRecord:
        record = await self.repository.get_policy(organization_id, policy_id)
        if record is None:
            raise NotFoundError("AI policy not found", param="policy_id")
        return record


def _apply(record: AiPolicyRecord, changes: dict[str, Any]) -> None:
    for name in _UPDATABLE:
        if name not in changes:
            continue
        value = changes[name]
        if value is None and name in ("name", "require_attribution", "enabled"):
            continue
        if name in ("allowed_models", "blocked_models"):
            value = sorted({model.strip() for model in value or [] if model and model.strip()})
        setattr(record, name, value)
