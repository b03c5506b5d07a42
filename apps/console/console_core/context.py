from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
principal_id_var: ContextVar[str | None] = ContextVar("principal_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_principal_id(value: str | None) -> Token[str | None]:
    return principal_id_var.set(value)


def reset_principal_id(token: Token[str | None]) -> None:
    principal_id_var.reset(token)


def get_principal_id() -> str | None:
    return principal_id_var.get()


@contextmanager
def correlation_scope(value: str | None = None) -> Iterator[str]:
    """Reuse the current correlation id, or open a new one for the block."""

    existing = get_correlation_id()
    if existing is not None and value is None:
        yield existing
        return

    correlation_id = value or str(uuid.uuid4())
    token = set_correlation_id(correlation_id)
    try:
        yield correlation_id
    finally:
        reset_correlation_id(token)


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "principal_id": get_principal_id()}
