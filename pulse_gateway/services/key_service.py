from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from pulse_gateway.models.domain import Attribution, GatewayKeyRecord, KeyStatus, as_utc, utcnow
from pulse_gateway.models.errors import AuthError, ConflictError, InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)

KEY_PREFIX = "pulse_key_"
VISIBLE_PREFIX_LENGTH = 12

ADVANCED_LIMIT_FIELDS = ("rate_limit_rpm", "daily_cost_limit_eur", "monthly_cost_limit_eur")
UPDATABLE_FIELDS = frozenset(
    {
        "label",
        "enabled",
        "expires_at",
        "default_team_id",
        "default_project_id",
        "default_app_id",
        "default_client_id",
        "allowed_models",
        "blocked_models",
        "require_attribution",
        *ADVANCED_LIMIT_FIELDS,
    }
)


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_key() -> tuple[str, str]:
    """Return a new ``(secret, visible_prefix)`` pair."""
    secret = f"{KEY_PREFIX}{secrets.token_hex(32)}"
    return secret, secret[:VISIBLE_PREFIX_LENGTH]


@dataclass(frozen=True)
class AuthenticatedKey:
    id: str
    organization_id: str
    key_prefix: str
    created_by_user_id: str | None = None
    allowed_models: tuple[str, ...] = ()
    blocked_models: tuple[str, ...] = ()
    default_attribution: Attribution = Attribution()
    require_attribution: bool | None = None
    rate_limit_rpm: int | None = None
    daily_cost_limit_eur: Decimal | None = None
    monthly_cost_limit_eur: Decimal | None = None

    @classmethod
    def from_record(cls, record: GatewayKeyRecord) -> AuthenticatedKey:
        return cls(
            id=record.id,
            organization_id=record.organization_id,
            key_prefix=record.key_prefix,
            created_by_user_id=record.created_by_user_id,
            allowed_models=tuple(record.allowed_models or ()),
            blocked_models=tuple(record.blocked_models or ()),
            default_attribution=record.default_attribution,
            require_attribution=record.require_attribution,
            rate_limit_rpm=record.rate_limit_rpm,
            daily_cost_limit_eur=record.daily_cost_limit_eur,
            monthly_cost_limit_eur=record.monthly_cost_limit_eur,
        )


@dataclass(frozen=True)
class IssuedKey:
    record: GatewayKeyRecord
    secret: str


class KeyService:
    def __init__(
        self,
        repository: Any,
        entitlements: Any | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.entitlements = entitlements
        self.clock = clock

    async def authenticate(self, credential: str | None) -> AuthenticatedKey:
        if not credential:
            raise AuthError("invalid_key", message="Missing API key")

        record = await self.repository.get_key_by_hash(hash_key(credential))
        if record is None:
            logger.warning("invalid gateway key", extra={"key_prefix": credential[:VISIBLE_PREFIX_LENGTH]})
            raise AuthError("invalid_key")
        if record.status == KeyStatus.REVOKED:
            logger.warning("revoked gateway key", extra={"key_id": record.id})
            raise AuthError("revoked")
        if not record.enabled:
            logger.warning("disabled gateway key", extra={"key_id": record.id})
            raise AuthError("disabled")

        now = self.clock()
        expires_at = as_utc(record.expires_at)
        if expires_at is not None and expires_at <= now:
            logger.warning("expired gateway key", extra={"key_id": record.id})
            raise AuthError("expired")

        try:
            await self.repository.touch_key(record.id, now)
        except Exception:
            logger.exception("failed to update key last_used_at", extra={"key_id": record.id})

        return AuthenticatedKey.from_record(record)

    async def issue_key(
        self,
        organization_id: str,
        *,
        created_by_user_id: str | None = None,
        label: str | None = None,
        **options: Any,
    ) -> IssuedKey:
        unknown = set(options) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequestError(f"Unknown key option(s): {', '.join(sorted(unknown))}")

        if self.entitlements is not None:
            await self.entitlements.assert_can_create(organization_id, "api_keys_count")
            if any(options.get(name) for name in ADVANCED_LIMIT_FIELDS):
                await self.entitlements.assert_feature(organization_id, "api_keys_advanced_limits")

        secret, prefix = generate_key()
        record = GatewayKeyRecord(
            organization_id=organization_id,
            key_hash=hash_key(secret),
            key_prefix=prefix,
            created_by_user_id=created_by_user_id,
            label=label,
            created_at=self.clock(),
        )
        self._apply(record, options)
        record = await self.repository.create_key(record)
        logger.info("gateway key issued", extra={"key_id": record.id, "organization_id": organization_id})
        return IssuedKey(record=record, secret=secret)

    async def rotate_key(self, organization_id: str, key_id: str) -> IssuedKey:
        record = await self._get(organization_id, key_id)
        if record.status == KeyStatus.REVOKED:
            raise ConflictError("Cannot rotate a revoked API key", code="key_revoked")
        if self.entitlements is not None:
            await self.entitlements.assert_feature(organization_id, "api_keys_rotation")

        secret, prefix = generate_key()
        record.key_hash = hash_key(secret)
        record.key_prefix = prefix
        record = await self.repository.save_key(record)
        logger.info("gateway key rotated", extra={"key_id": record.id, "organization_id": organization_id})
        return IssuedKey(record=record, secret=secret)

    async def update_key(self, organization_id: str, key_id: str, **changes: Any) -> GatewayKeyRecord:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequestError(f"Unknown key field(s): {', '.join(sorted(unknown))}")

        record = await self._get(organization_id, key_id)
        if record.status == KeyStatus.REVOKED:
            raise ConflictError("Cannot update a revoked API key", code="key_revoked")
        if self.entitlements is not None and any(changes.get(name) for name in ADVANCED_LIMIT_FIELDS):
            await self.entitlements.assert_feature(organization_id, "api_keys_advanced_limits")

        self._apply(record, changes)
        return await self.repository.save_key(record)

    async def revoke_key(self, organization_id: str, key_id: str) -> GatewayKeyRecord:
        record = await self._get(organization_id, key_id)
        if record.status == KeyStatus.REVOKED:
            return record
        record.status = KeyStatus.REVOKED
        record.enabled = False
        record = await self.repository.save_key(record)
        logger.info("gateway key revoked", extra={"key_id": record.id, "organization_id": organization_id})
        return record

    async def list_keys(self, organization_id: str) -> list[GatewayKeyRecord]:
        return await self.repository.list_keys(organization_id)

    async def _get(self, organization_id: str, key_id: str) -> GatewayKeyRecord:
        record = await self.repository.get_key(organization_id, key_id)
        if record is None:
            raise NotFoundError("API key not found", param="key_id")
        return record

    @staticmethod
    def _apply(record: GatewayKeyRecord, changes: dict[str, Any]) -> None:
        for name, value in changes.items():
            if name in ("allowed_models", "blocked_models"):
                value = list(value or [])
            setattr(record, name, value)
