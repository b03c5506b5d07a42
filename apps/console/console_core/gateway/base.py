from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

Row = dict[str, Any]
Unsubscribe = Callable[[], None]


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuthEvent(StrEnum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    event_type: ChangeType
    table: str
    new_row: Row | None = None
    old_row: Row | None = None

    @property
    def row(self) -> Row:
        return self.new_row or self.old_row or {}


@dataclass(slots=True)
class AuthSession:
    access_token: str
    user_id: str
    email: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    user_metadata: dict[str, Any] = field(default_factory=dict)


ChangeHandler = Callable[[ChangeEvent], None]
AuthEventHandler = Callable[[AuthEvent, AuthSession | None], None]


class RemoteGateway(Protocol):
    """Contract the layer consumes from the hosted backend.

    Data calls take table names and plain rows; schema validation happens
    above this boundary. Handlers registered for change or auth events are
    plain callables and must not block.
    """

    async def fetch_collection(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Row]: ...

    async def fetch_by_id(self, table: str, item_id: Any) -> Row: ...

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Row: ...

    async def update(self, table: str, item_id: Any, fields: Mapping[str, Any]) -> Row: ...

    async def soft_delete(self, table: str, item_id: Any) -> None: ...

    async def hard_delete(self, table: str, item_id: Any) -> None: ...

    def subscribe_to_changes(self, table: str, handler: ChangeHandler) -> Unsubscribe: ...

    async def get_session(self) -> AuthSession | None: ...

    def on_auth_event(self, handler: AuthEventHandler) -> Unsubscribe: ...

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession: ...

    async def sign_up(self, email: str, password: str, metadata: Mapping[str, Any] | None = None) -> str: ...

    async def sign_out(self) -> None: ...
