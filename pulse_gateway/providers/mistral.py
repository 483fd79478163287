from __future__ import annotations

from pulse_gateway.models.domain import Provider
from pulse_gateway.providers.openai import OpenAICompatibleAdapter
from pulse_gateway.providers.registry import register_adapter


@register_adapter(Provider.MISTRAL)
class MistralAdapter(OpenAICompatibleAdapter):
    provider = Provider.MISTRAL
    display_name = "Mistral"
    default_api_base = "https://api.mistral.ai/v1"
    health_check_model = "mistral-small-latest"
