from __future__ import annotations

from pulse_gateway.models.domain import Provider
from pulse_gateway.providers.openai import OpenAICompatibleAdapter
from pulse_gateway.providers.registry import register_adapter


@register_adapter(Provider.XAI)
class XAIAdapter(OpenAICompatibleAdapter):
    provider = Provider.XAI
    display_name = "xAI"
    default_api_base = "https://api.x.ai/v1"
    health_check_model = "grok-beta"
