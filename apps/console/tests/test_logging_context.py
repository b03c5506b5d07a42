from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest

from console_core.context import (
    correlation_scope,
    get_correlation_id,
    get_log_context,
    reset_principal_id,
    set_principal_id,
)
from console_core.core.config import get_settings
from console_core.entities.registry import LEADS
from console_core.entities.store import EntityCollection
from console_core.gateway.memory import InMemoryGateway
from console_core.logging import CorrelationIdFilter, JsonLogFormatter


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RETRY_INITIAL_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def make_record(message: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("console_core.entities", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_emits_known_fields_and_correlation_id() -> None:
    with correlation_scope("corr-1"):
        record = make_record("entity.mutation", kind="leads", operation="create", entity_id="lead-1", secret="x")
        CorrelationIdFilter().filter(record)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "entity.mutation"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "console_core.entities"
    assert payload["correlation_id"] == "corr-1"
    assert payload["fields"] == {"kind": "leads", "operation": "create", "entity_id": "lead-1"}


def test_json_formatter_truncates_errors_and_drops_empty_fields() -> None:
    record = make_record("retry.exhausted", error="x" * 800, entity_id=None)

    payload = json.loads(JsonLogFormatter().format(record))

    assert len(payload["fields"]["error"]) == 500
    assert "entity_id" not in payload["fields"]


def test_correlation_scope_reuses_the_outer_id() -> None:
    assert get_correlation_id() is None

    with correlation_scope() as outer:
        with correlation_scope() as inner:
            assert inner == outer
        with correlation_scope("explicit") as explicit:
            assert get_correlation_id() == "explicit"
        assert explicit == "explicit"
        assert get_correlation_id() == outer

    assert get_correlation_id() is None


def test_log_context_includes_principal() -> None:
    token = set_principal_id("user-1")
    try:
        with correlation_scope("corr-2"):
            assert get_log_context() == {"correlation_id": "corr-2", "principal_id": "user-1"}
    finally:
        reset_principal_id(token)
    assert get_log_context() == {"correlation_id": None, "principal_id": None}


@pytest.mark.asyncio
async def test_mutation_logs_carry_the_caller_correlation_id(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    caplog.handler.addFilter(CorrelationIdFilter())
    leads = EntityCollection(LEADS, InMemoryGateway())

    with correlation_scope("corr-mutation"):
        created = await leads.create({"name": "Acme"})

    records = [record for record in caplog.records if record.getMessage() == "entity.mutation"]
    assert len(records) == 1
    assert getattr(records[0], "correlation_id", None) == "corr-mutation"
    assert getattr(records[0], "kind", None) == "leads"
    assert getattr(records[0], "operation", None) == "create"
    assert created.id is not None


@pytest.mark.asyncio
async def test_failed_mutation_is_logged_with_the_error(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    gateway = InMemoryGateway()
    gateway.fail_next("insert", "leads")
    leads = EntityCollection(LEADS, gateway)

    with pytest.raises(Exception):
        await leads.create({"name": "Acme"})

    [record] = [record for record in caplog.records if record.getMessage() == "entity.mutation_failed"]
    assert record.levelno == logging.WARNING
    assert getattr(record, "error", None) == "injected failure"
