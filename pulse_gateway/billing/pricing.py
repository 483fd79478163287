from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pulse_gateway.models.domain import Provider

ONE_MILLION = Decimal(1_000_000)
COST_QUANTUM = Decimal("0.00000001")


@dataclass(frozen=True)
class ModelPricing:
    """EUR per one million tokens."""

    input_per_million: Decimal
    output_per_million: Decimal
    provider: Provider | None = None


def _price(input_eur: str, output_eur: str, provider: Provider) -> ModelPricing:
    return ModelPricing(Decimal(input_eur), Decimal(output_eur), provider)


DEFAULT_MODEL_PRICING: dict[str, ModelPricing] = {
    "gpt-4": _price("24", "48", Provider.OPENAI),
    "gpt-4-turbo": _price("8", "24", Provider.OPENAI),
    "gpt-4o": _price("2.5", "10", Provider.OPENAI),
    "gpt-4o-mini": _price("0.15", "0.6", Provider.OPENAI),
    "gpt-3.5-turbo": _price("0.5", "1.5", Provider.OPENAI),
    "o1-preview": _price("12", "60", Provider.OPENAI),
    "o1-mini": _price("3", "12", Provider.OPENAI),
    "claude-3-5-sonnet": _price("3", "15", Provider.ANTHROPIC),
    "claude-3-opus": _price("12", "60", Provider.ANTHROPIC),
    "claude-3-haiku": _price("0.25", "1.25", Provider.ANTHROPIC),
    "gemini-pro": _price("0.5", "1.5", Provider.GOOGLE),
    "gemini-1.5-pro": _price("1.25", "5", Provider.GOOGLE),
    "gemini-1.5-flash": _price("0.075", "0.3", Provider.GOOGLE),
    "mistral-large": _price("2", "6", Provider.MISTRAL),
    "mistral-medium": _price("1", "3", Provider.MISTRAL),
    "mistral-small": _price("0.2", "0.6", Provider.MISTRAL),
    "grok-beta": _price("5", "15", Provider.XAI),
}

FALLBACK_PRICING = ModelPricing(Decimal("2"), Decimal("2"))

_PROVIDER_HINTS: list[tuple[str, Provider]] = [
    ("gpt-", Provider.OPENAI),
    ("o1", Provider.OPENAI),
    ("claude", Provider.ANTHROPIC),
    ("gemini", Provider.GOOGLE),
    ("mistral", Provider.MISTRAL),
    ("grok", Provider.XAI),
]


class PricingTable:
    def __init__(self, overrides: Mapping[str, ModelPricing] | None = None) -> None:
        self.prices: dict[str, ModelPricing] = dict(DEFAULT_MODEL_PRICING)
        self.prices.update(overrides or {})

    @classmethod
    def from_config(cls, overrides: Mapping[str, Any]) -> PricingTable:
        """Build from `AppConfig.pricing` entries (EUR per 1M input/output tokens)."""
        return cls(
            {
                model: ModelPricing(
                    Decimal(str(entry.input_per_million_eur)),
                    Decimal(str(entry.output_per_million_eur)),
                    Provider(entry.provider) if entry.provider else None,
                )
                for model, entry in overrides.items()
            }
        )

    def get(self, model: str) -> ModelPricing | None:
        """Exact match first, then the longest known prefix (dated model snapshots)."""
        if model in self.prices:
            return self.prices[model]
        for prefix in sorted(self.prices.keys(), key=len, reverse=True):
            if model.startswith(prefix):
                return self.prices[prefix]
        return None

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int) -> Decimal:
        pricing = self.get(model) or FALLBACK_PRICING
        cost = (
            Decimal(max(0, input_tokens)) * pricing.input_per_million
            + Decimal(max(0, output_tokens)) * pricing.output_per_million
        ) / ONE_MILLION
        return cost.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)

    def provider_for_model(self, model: str) -> Provider | None:
        pricing = self.get(model)
        if pricing is not None and pricing.provider is not None:
            return pricing.provider
        lowered = model.lower()
        for prefix, provider in _PROVIDER_HINTS:
            if lowered.startswith(prefix):
                return provider
        return None
