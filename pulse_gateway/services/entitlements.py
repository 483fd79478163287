"""Plan entitlements.

Each organization is on one plan. A plan grants count limits (provider
connections, model routes, alert rules, API keys) and boolean features
(webhooks, key rotation, advanced key limits). Checks raise
`EntitlementError` naming the cheapest plan that would allow the action.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pulse_gateway.models.errors import EntitlementError, InvalidRequestError

logger = logging.getLogger(__name__)


class Plan(str, Enum):
    STARTER = "STARTER"
    PRO = "PRO"
    BUSINESS = "BUSINESS"


PLAN_ORDER = (Plan.STARTER, Plan.PRO, Plan.BUSINESS)
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})


@dataclass(frozen=True)
class Entitlements:
    ai_routing_providers: int
    ai_routing_routes: int
    alert_rules: int
    webhooks: bool
    api_keys_count: int
    api_keys_rotation: bool
    api_keys_advanced_limits: bool


PLAN_ENTITLEMENTS: dict[Plan, Entitlements] = {
    Plan.STARTER: Entitlements(
        ai_routing_providers=1,
        ai_routing_routes=5,
        alert_rules=3,
        webhooks=False,
        api_keys_count=3,
        api_keys_rotation=False,
        api_keys_advanced_limits=False,
    ),
    Plan.PRO: Entitlements(
        ai_routing_providers=3,
        ai_routing_routes=25,
        alert_rules=20,
        webhooks=False,
        api_keys_count=20,
        api_keys_rotation=True,
        api_keys_advanced_limits=True,
    ),
    Plan.BUSINESS: Entitlements(
        ai_routing_providers=10,
        ai_routing_routes=200,
        alert_rules=1000,
        webhooks=True,
        api_keys_count=1000,
        api_keys_rotation=True,
        api_keys_advanced_limits=True,
    ),
}

COUNT_FEATURES = frozenset({"ai_routing_providers", "ai_routing_routes", "alert_rules", "api_keys_count"})
BOOLEAN_FEATURES = frozenset({"webhooks", "api_keys_rotation", "api_keys_advanced_limits"})

FEATURE_LABELS = {
    "ai_routing_providers": "provider connections",
    "ai_routing_routes": "model routes",
    "alert_rules": "alert rules",
    "api_keys_count": "API keys",
    "webhooks": "Webhooks",
    "api_keys_rotation": "API key rotation",
    "api_keys_advanced_limits": "Advanced API key limits",
}

_COUNTERS = {
    "ai_routing_providers": "count_provider_connections",
    "ai_routing_routes": "count_model_routes",
    "api_keys_count": "count_keys",
    "alert_rules": "count_alert_rules",
}


def normalize_plan(plan: str | None, default: Plan = Plan.STARTER) -> Plan:
    if not plan:
        return default
    value = plan.upper()
    if value == "FREE":
        return Plan.STARTER
    try:
        return Plan(value)
    except ValueError:
        return default


def get_entitlements(plan: Plan | str) -> Entitlements:
    return PLAN_ENTITLEMENTS[normalize_plan(plan)]


def _allows(entitlements: Entitlements, feature: str, current_value: int | None) -> bool:
    value = getattr(entitlements, feature)
    if feature in BOOLEAN_FEATURES:
        return bool(value)
    return (current_value or 0) < value


def required_plan(feature: str, current_value: int | None = None) -> Plan | None:
    for plan in PLAN_ORDER:
        if _allows(PLAN_ENTITLEMENTS[plan], feature, current_value):
            return plan
    return None


def assert_entitlement(
    entitlements: Entitlements,
    feature: str,
    current_value: int | None = None,
    *,
    plan: Plan | None = None,
) -> None:
    if feature not in COUNT_FEATURES and feature not in BOOLEAN_FEATURES:
        raise InvalidRequestError(f"Unknown entitlement feature '{feature}'")
    if _allows(entitlements, feature, current_value):
        return

    needed = required_plan(feature, current_value)
    label = FEATURE_LABELS[feature]
    if feature in BOOLEAN_FEATURES:
        message = f"{label} is not included in your plan. Upgrade to {(needed or Plan.BUSINESS).value}."
    elif needed is None:
        message = f"You have reached the maximum number of {label}. Contact support to raise the limit."
    else:
        limit = getattr(entitlements, feature)
        message = f"Your plan allows {limit} {label}. Upgrade to {needed.value} for more."
    raise EntitlementError(
        feature,
        message,
        plan=plan.value if plan else None,
        required_plan=(needed or Plan.BUSINESS).value,
    )


class EntitlementService:
    def __init__(self, repository: Any, default_plan: Plan | str = Plan.STARTER) -> None:
        self.repository = repository
        self.default_plan = normalize_plan(default_plan)

    async def get_plan(self, organization_id: str) -> Plan:
        organization = await self.repository.get_organization(organization_id)
        if organization is None:
            return self.default_plan
        status = (organization.subscription_status or "").lower()
        if status and status not in ACTIVE_SUBSCRIPTION_STATUSES:
            return Plan.STARTER
        return normalize_plan(organization.plan, self.default_plan)

    async def get_entitlements(self, organization_id: str) -> Entitlements:
        return get_entitlements(await self.get_plan(organization_id))

    async def assert_feature(self, organization_id: str, feature: str) -> None:
        plan = await self.get_plan(organization_id)
        assert_entitlement(get_entitlements(plan), feature, plan=plan)

    async def assert_can_create(self, organization_id: str, feature: str, current_value: int | None = None) -> None:
        plan = await self.get_plan(organization_id)
        if current_value is None:
            counter = getattr(self.repository, _COUNTERS.get(feature, ""), None)
            if counter is None:
                raise InvalidRequestError(f"Cannot count resources for entitlement '{feature}'")
            current_value = await counter(organization_id)
        logger.debug(
            "entitlement check",
            extra={"organization_id": organization_id, "feature": feature, "current": current_value, "plan": plan.value},
        )
        assert_entitlement(get_entitlements(plan), feature, current_value, plan=plan)
