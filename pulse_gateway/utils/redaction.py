from __future__ import annotations

import re

REDACTED = "[REDACTED]"

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+"), f"Bearer {REDACTED}"),
    (re.compile(r"\bsk-ant-[A-Za-z0-9_-]{6,}"), REDACTED),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{6,}"), REDACTED),
    (re.compile(r"\bxai-[A-Za-z0-9_-]{6,}"), REDACTED),
    (re.compile(r"\bAIza[0-9A-Za-z_-]{10,}"), REDACTED),
    (re.compile(r"\bpulse_key_[0-9a-fA-F]{6,}"), REDACTED),
    (re.compile(r"(?i)([?&](?:key|api_key|apikey)=)[^&\s\"']+"), rf"\g<1>{REDACTED}"),
    (re.compile(r"(?i)(x-api-key[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+"), rf"\g<1>{REDACTED}"),
]


def redact_secrets(text: str | None) -> str:
    """Mask credential-shaped substrings so messages are safe to log or return."""
    if not text:
        return ""
    value = str(text)
    for pattern, replacement in _SECRET_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def redact_known(text: str | None, *secrets: str | None) -> str:
    """Like `redact_secrets`, and also masks the exact secret values given."""
    value = str(text or "")
    for secret in secrets:
        if secret and len(secret) >= 4:
            value = value.replace(secret, REDACTED)
    return redact_secrets(value)
