from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from pulse_gateway.models.domain import Attribution
from pulse_gateway.models.errors import AttributionError, RestrictionError
from pulse_gateway.services.key_service import AuthenticatedKey

TEAM_HEADER = "x-pulse-team"
PROJECT_HEADER = "x-pulse-project"
APP_HEADER = "x-pulse-app"
CLIENT_HEADER = "x-pulse-client"


@dataclass(frozen=True)
class AttributionHints:
    """Caller-supplied attribution overrides. Organization is never overridable."""

    team_id: str | None = None
    project_id: str | None = None
    app_id: str | None = None
    client_id: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> AttributionHints:
        def _get(name: str) -> str | None:
            value = headers.get(name)
            return value.strip() or None if value else None

        return cls(
            team_id=_get(TEAM_HEADER),
            project_id=_get(PROJECT_HEADER),
            app_id=_get(APP_HEADER),
            client_id=_get(CLIENT_HEADER),
        )


def resolve_attribution(
    key: AuthenticatedKey,
    hints: AttributionHints | None = None,
    *,
    organization_requires: bool = False,
    policy_requires: bool = False,
) -> Attribution:
    hints = hints or AttributionHints()
    defaults = key.default_attribution
    attribution = Attribution(
        team_id=hints.team_id or defaults.team_id,
        project_id=hints.project_id or defaults.project_id,
        app_id=hints.app_id or defaults.app_id,
        client_id=hints.client_id or defaults.client_id,
    )

    if policy_requires and not attribution.app_id:
        raise AttributionError("App attribution is required by organization policy (x-pulse-app header)")
    required = key.require_attribution if key.require_attribution is not None else organization_requires
    if required and not attribution.app_id:
        raise AttributionError()
    return attribution


def check_model_allowed(key: AuthenticatedKey, model: str) -> None:
    if model in key.blocked_models:
        raise RestrictionError(model, message=f"Model '{model}' is blocked for this API key")
    if key.allowed_models and model not in key.allowed_models:
        raise RestrictionError(model, message=f"Model '{model}' is not in this API key's allow-list")
