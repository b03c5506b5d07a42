from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


gateway_requests_total = Counter(
    "console_gateway_requests_total",
    "Total remote gateway requests",
    ["operation", "table", "status"],
)

gateway_request_duration_seconds = Histogram(
    "console_gateway_request_duration_seconds",
    "Remote gateway request duration in seconds",
    ["operation"],
)

retry_attempts_total = Counter(
    "console_retry_attempts_total",
    "Retries scheduled after a failed attempt",
    ["operation"],
)

retry_exhausted_total = Counter(
    "console_retry_exhausted_total",
    "Operations that failed after all retries",
    ["operation"],
)

entity_mutations_total = Counter(
    "console_entity_mutations_total",
    "Entity mutations by kind, operation and outcome",
    ["kind", "operation", "status"],
)

entity_loads_total = Counter(
    "console_entity_loads_total",
    "Collection loads by kind and outcome",
    ["kind", "status"],
)

permission_resolutions_total = Counter(
    "console_permission_resolutions_total",
    "Permission resolutions by outcome",
    ["outcome"],
)

permission_change_events_total = Counter(
    "console_permission_change_events_total",
    "Permission change events by relevance decision",
    ["decision"],
)

session_transitions_total = Counter(
    "console_session_transitions_total",
    "Session state transitions",
    ["from_state", "to_state"],
)


def observe_gateway_request(operation: str, table: str, status: str, duration: float) -> None:
    gateway_requests_total.labels(operation=operation, table=table, status=status).inc()
    gateway_request_duration_seconds.labels(operation=operation).observe(duration)


def observe_retry_attempt(operation: str) -> None:
    retry_attempts_total.labels(operation=operation).inc()


def observe_retry_exhausted(operation: str) -> None:
    retry_exhausted_total.labels(operation=operation).inc()


def observe_entity_mutation(kind: str, operation: str, status: str) -> None:
    entity_mutations_total.labels(kind=kind, operation=operation, status=status).inc()


def observe_entity_load(kind: str, status: str) -> None:
    entity_loads_total.labels(kind=kind, status=status).inc()


def observe_permission_resolution(outcome: str) -> None:
    permission_resolutions_total.labels(outcome=outcome).inc()


def observe_permission_change_event(decision: str) -> None:
    permission_change_events_total.labels(decision=decision).inc()


def observe_session_transition(from_state: str, to_state: str) -> None:
    session_transitions_total.labels(from_state=from_state, to_state=to_state).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
