from pulse_gateway.billing.metering import CallOutcome, MeteringReceipt, MeteringService, cost_event_hash
from pulse_gateway.billing.pricing import DEFAULT_MODEL_PRICING, ModelPricing, PricingTable

__all__ = [
    "CallOutcome",
    "DEFAULT_MODEL_PRICING",
    "MeteringReceipt",
    "MeteringService",
    "ModelPricing",
    "PricingTable",
    "cost_event_hash",
]
