from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

deal_mutations_total = Counter(
    "deal_mutations_total",
    "Total deal mutations by action",
    ["action"],
)

deal_stage_transitions_total = Counter(
    "deal_stage_transitions_total",
    "Total deal stage transitions by outcome",
    ["outcome"],
)

deal_event_publish_failures_total = Counter(
    "deal_event_publish_failures_total",
    "Total deal event publish failures by event type",
    ["event_type"],
)

deal_forecast_duration_seconds = Histogram(
    "deal_forecast_duration_seconds",
    "Forecast generation duration in seconds",
)

deal_forecast_deals_count = Histogram(
    "deal_forecast_deals_count",
    "Number of deals aggregated per forecast",
    buckets=(0, 10, 50, 100, 500, 1000, 5000, 10000, 50000),
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_deal_mutation(action: str, count: int = 1) -> None:
    if count > 0:
        deal_mutations_total.labels(action=action).inc(count)


def observe_stage_transition(outcome: str, count: int = 1) -> None:
    if count > 0:
        deal_stage_transitions_total.labels(outcome=outcome).inc(count)


def observe_event_publish_failure(event_type: str) -> None:
    deal_event_publish_failures_total.labels(event_type=event_type).inc()


def observe_forecast(duration: float, deal_count: int) -> None:
    deal_forecast_duration_seconds.observe(duration)
    deal_forecast_deals_count.observe(deal_count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
