from __future__ import annotations

import hashlib
import math
from collections.abc import Iterable, Mapping
from typing import Any

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Rough token count used when a provider does not report usage."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def message_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, Mapping) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "\n".join(parts)
    return str(content)


def prompt_text(messages: Iterable[Mapping[str, Any]]) -> str:
    return "\n".join(message_text(message.get("content")) for message in messages)


def hash_prompt(messages: Iterable[Mapping[str, Any]]) -> str:
    return hashlib.sha256(prompt_text(messages).encode("utf-8")).hexdigest()
