from __future__ import annotations

from decimal import Decimal
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Histogram

PROMETHEUS_REGISTRY = CollectorRegistry()
UNKNOWN_LABEL = "unknown"

LATENCY_BUCKETS = [0.05, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0, 60.0]


def get_prometheus_registry() -> CollectorRegistry:
    return PROMETHEUS_REGISTRY


def sanitize_label(value: Any, fallback: str = UNKNOWN_LABEL) -> str:
    if value is None:
        return fallback
    text = str(getattr(value, "value", value)).strip()
    if not text:
        return fallback
    text = text.replace("\n", " ").replace("\r", " ")
    if len(text) > 128:
        return text[:128]
    return text


gateway_requests_metric = Counter(
    "pulse_gateway_requests_total",
    "Total gateway calls that reached metering",
    ["model", "api_provider", "status_code"],
    registry=PROMETHEUS_REGISTRY,
)

gateway_request_failures_metric = Counter(
    "pulse_gateway_request_failures_total",
    "Total failed gateway calls",
    ["model", "api_provider", "error_type"],
    registry=PROMETHEUS_REGISTRY,
)

gateway_tokens_metric = Counter(
    "pulse_gateway_tokens_total",
    "Total tokens metered",
    ["model", "api_provider", "direction"],
    registry=PROMETHEUS_REGISTRY,
)

gateway_spend_metric = Counter(
    "pulse_gateway_spend_eur_total",
    "Total metered spend in EUR",
    ["model", "api_provider"],
    registry=PROMETHEUS_REGISTRY,
)

gateway_request_latency_metric = Histogram(
    "pulse_gateway_request_latency_seconds",
    "End-to-end gateway call latency",
    ["model", "api_provider", "status_code"],
    buckets=LATENCY_BUCKETS,
    registry=PROMETHEUS_REGISTRY,
)

metering_write_failures_metric = Counter(
    "pulse_gateway_metering_write_failures_total",
    "Metering records that could not be persisted",
    ["record"],
    registry=PROMETHEUS_REGISTRY,
)

webhook_deliveries_metric = Counter(
    "pulse_gateway_webhook_deliveries_total",
    "Webhook delivery attempts",
    ["event", "status"],
    registry=PROMETHEUS_REGISTRY,
)


def increment_request(*, model: str, api_provider: str | None, status_code: int) -> None:
    gateway_requests_metric.labels(
        model=sanitize_label(model),
        api_provider=sanitize_label(api_provider),
        status_code=str(status_code),
    ).inc()


def increment_request_failure(*, model: str, api_provider: str | None, error_type: str) -> None:
    gateway_request_failures_metric.labels(
        model=sanitize_label(model),
        api_provider=sanitize_label(api_provider),
        error_type=sanitize_label(error_type),
    ).inc()


def increment_usage(*, model: str, api_provider: str | None, input_tokens: int, output_tokens: int) -> None:
    provider = sanitize_label(api_provider)
    gateway_tokens_metric.labels(model=sanitize_label(model), api_provider=provider, direction="input").inc(
        max(0, input_tokens)
    )
    gateway_tokens_metric.labels(model=sanitize_label(model), api_provider=provider, direction="output").inc(
        max(0, output_tokens)
    )


def increment_spend(*, model: str, api_provider: str | None, amount_eur: Decimal) -> None:
    gateway_spend_metric.labels(model=sanitize_label(model), api_provider=sanitize_label(api_provider)).inc(
        max(0.0, float(amount_eur))
    )


def observe_request_latency(*, model: str, api_provider: str | None, status_code: int, latency_seconds: float) -> None:
    gateway_request_latency_metric.labels(
        model=sanitize_label(model),
        api_provider=sanitize_label(api_provider),
        status_code=str(status_code),
    ).observe(max(0.0, float(latency_seconds)))


def increment_metering_write_failure(record: str) -> None:
    metering_write_failures_metric.labels(record=record).inc()


def increment_webhook_delivery(*, event: str, status: str) -> None:
    webhook_deliveries_metric.labels(event=sanitize_label(event), status=status).inc()
