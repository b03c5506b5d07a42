from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

from console_core.context import get_correlation_id
from console_core.metrics import observe_gateway_request


tracer = trace.get_tracer("console_core.gateway")


@asynccontextmanager
async def gateway_call(operation: str, table: str) -> AsyncIterator[Span]:
    started = time.perf_counter()
    with tracer.start_as_current_span(f"gateway.{operation}") as span:
        span.set_attribute("table", table)
        span.set_attribute("correlation_id", get_correlation_id() or "")
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            observe_gateway_request(operation, table, "error", time.perf_counter() - started)
            raise
        observe_gateway_request(operation, table, "ok", time.perf_counter() - started)
