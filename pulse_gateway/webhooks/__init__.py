from pulse_gateway.webhooks.dispatcher import WebhookDispatcher
from pulse_gateway.webhooks.service import (
    AI_REQUEST_COMPLETED,
    COST_EVENT_CREATED,
    WEBHOOK_EVENTS,
    CreatedWebhook,
    WebhookService,
)
from pulse_gateway.webhooks.signing import sign_payload, verify_signature

__all__ = [
    "AI_REQUEST_COMPLETED",
    "COST_EVENT_CREATED",
    "CreatedWebhook",
    "WEBHOOK_EVENTS",
    "WebhookDispatcher",
    "WebhookService",
    "sign_payload",
    "verify_signature",
]
