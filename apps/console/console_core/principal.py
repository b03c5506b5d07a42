from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from console_core.entities.schemas import UserProfile
from console_core.errors import SchemaError


USERS_TABLE = "users"


class SessionState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"


class Principal(UserProfile):
    """The signed-in user's profile row."""

    id: str


def parse_principal(row: Mapping[str, Any]) -> Principal:
    try:
        return Principal.model_validate(dict(row))
    except ValidationError as exc:
        raise SchemaError(USERS_TABLE, exc.errors()) from exc
