from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from console_core.core.auth import decode_access_token, issue_access_token
from console_core.core.events import InProcessEventBus, InternalEvent
from console_core.errors import AccountExistsError, AuthorizationError, GatewayError, NotFoundError
from console_core.gateway.base import (
    AuthEvent,
    AuthEventHandler,
    AuthSession,
    ChangeEvent,
    ChangeHandler,
    ChangeType,
    Row,
    Unsubscribe,
)
from console_core.gateway.tracing import gateway_call


_AUTH_CHANNEL = "auth"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Account:
    user_id: str
    email: str
    password: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Fault:
    operation: str
    table: str | None
    error: BaseException
    remaining: int


@dataclass
class _Gate:
    operation: str
    table: str | None
    release: asyncio.Event


class InMemoryGateway:
    """In-process backend with the same contract as the hosted one.

    Used by tests and local runs. Rows are deep-copied on the way in and out
    so callers never share state with the store. Every call is recorded in
    ``calls`` as ``(operation, table, detail)``.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Row]] = {}
        self._accounts: dict[str, _Account] = {}
        self._session: AuthSession | None = None
        self._bus = InProcessEventBus()
        self._faults: list[_Fault] = []
        self._gates: list[_Gate] = []
        self.calls: list[tuple[str, str, Any]] = []

    # -- test helpers ---------------------------------------------------

    def seed(self, table: str, rows: list[Mapping[str, Any]]) -> list[Row]:
        stored: list[Row] = []
        for fields in rows:
            row = self._build_row(fields)
            self._table(table)[str(row["id"])] = row
            stored.append(copy.deepcopy(row))
        return stored

    def rows(self, table: str) -> list[Row]:
        return [copy.deepcopy(row) for row in self._table(table).values()]

    def fail_next(
        self,
        operation: str,
        table: str | None = None,
        error: BaseException | None = None,
        times: int = 1,
    ) -> None:
        self._faults.append(
            _Fault(
                operation=operation,
                table=table,
                error=error or GatewayError("injected failure", status_code=500),
                remaining=times,
            )
        )

    def hold(self, operation: str, table: str | None = None) -> asyncio.Event:
        """Suspend the next matching call until the returned event is set."""

        gate = _Gate(operation=operation, table=table, release=asyncio.Event())
        self._gates.append(gate)
        return gate.release

    def calls_for(self, operation: str, table: str | None = None) -> list[tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == operation and (table is None or call[1] == table)]

    def register_account(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, Any] | None = None,
        user_id: str | None = None,
    ) -> str:
        account = _Account(
            user_id=user_id or str(uuid.uuid4()),
            email=email.lower(),
            password=password,
            metadata=dict(metadata or {}),
        )
        self._accounts[account.email] = account
        return account.user_id

    def start_session(self, user_id: str, email: str | None = None, ttl_seconds: int | None = None) -> AuthSession:
        """Install a session as if the user had signed in elsewhere."""

        self._session = self._issue_session(user_id, email, {}, ttl_seconds)
        return self._session

    def emit_auth_event(self, event: AuthEvent, session: AuthSession | None = None) -> None:
        self._bus.publish(_AUTH_CHANNEL, (event, session))

    def subscriber_count(self, table: str) -> int:
        return self._bus.subscriber_count(self._channel(table))

    # -- data -----------------------------------------------------------

    async def fetch_collection(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Row]:
        async with gateway_call("fetch_collection", table):
            await self._enter("fetch_collection", table, dict(filters or {}))
            rows = [row for row in self._table(table).values() if self._matches(row, filters)]
            if order_by is not None:
                rows.sort(key=lambda row: (row.get(order_by) is None, row.get(order_by)), reverse=descending)
            return [copy.deepcopy(row) for row in rows]

    async def fetch_by_id(self, table: str, item_id: Any) -> Row:
        async with gateway_call("fetch_by_id", table):
            await self._enter("fetch_by_id", table, item_id)
            return copy.deepcopy(self._get(table, item_id))

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Row:
        async with gateway_call("insert", table):
            await self._enter("insert", table, dict(fields))
            row = self._build_row(fields)
            key = str(row["id"])
            if key in self._table(table):
                raise GatewayError(f"duplicate key value violates unique constraint on {table}", status_code=409, code="23505")
            self._table(table)[key] = row
            self._publish(ChangeEvent(ChangeType.INSERT, table, new_row=copy.deepcopy(row)))
            return copy.deepcopy(row)

    async def update(self, table: str, item_id: Any, fields: Mapping[str, Any]) -> Row:
        async with gateway_call("update", table):
            await self._enter("update", table, (item_id, dict(fields)))
            return self._apply_update(table, item_id, fields)

    async def soft_delete(self, table: str, item_id: Any) -> None:
        async with gateway_call("soft_delete", table):
            await self._enter("soft_delete", table, item_id)
            self._apply_update(table, item_id, {"active": False})

    async def hard_delete(self, table: str, item_id: Any) -> None:
        async with gateway_call("hard_delete", table):
            await self._enter("hard_delete", table, item_id)
            old = self._get(table, item_id)
            del self._table(table)[str(item_id)]
            self._publish(ChangeEvent(ChangeType.DELETE, table, old_row=copy.deepcopy(old)))

    def subscribe_to_changes(self, table: str, handler: ChangeHandler) -> Unsubscribe:
        self.calls.append(("subscribe", table, None))

        def deliver(event: InternalEvent) -> None:
            handler(event.payload)

        return self._bus.subscribe(self._channel(table), deliver)

    # -- auth -----------------------------------------------------------

    async def get_session(self) -> AuthSession | None:
        await self._enter("get_session", _AUTH_CHANNEL, None)
        return self._session

    def on_auth_event(self, handler: AuthEventHandler) -> Unsubscribe:
        def deliver(event: InternalEvent) -> None:
            auth_event, session = event.payload
            handler(auth_event, session)

        return self._bus.subscribe(_AUTH_CHANNEL, deliver)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        await self._enter("sign_in", _AUTH_CHANNEL, email)
        account = self._accounts.get(email.lower())
        if account is None or account.password != password:
            raise AuthorizationError("Invalid login credentials", status_code=400, code="invalid_grant")
        self._session = self._issue_session(account.user_id, account.email, account.metadata, None)
        self.emit_auth_event(AuthEvent.SIGNED_IN, self._session)
        return self._session

    async def sign_up(self, email: str, password: str, metadata: Mapping[str, Any] | None = None) -> str:
        await self._enter("sign_up", _AUTH_CHANNEL, email)
        if email.lower() in self._accounts:
            raise AccountExistsError("User already registered", status_code=400, code="user_already_exists")
        return self.register_account(email, password, metadata)

    async def sign_out(self) -> None:
        await self._enter("sign_out", _AUTH_CHANNEL, None)
        had_session = self._session is not None
        self._session = None
        if had_session:
            self.emit_auth_event(AuthEvent.SIGNED_OUT, None)

    # -- internals ------------------------------------------------------

    def _table(self, table: str) -> dict[str, Row]:
        return self._tables.setdefault(table, {})

    @staticmethod
    def _channel(table: str) -> str:
        return f"changes:{table}"

    def _publish(self, event: ChangeEvent) -> None:
        self._bus.publish(self._channel(event.table), event)

    def _get(self, table: str, item_id: Any) -> Row:
        row = self._table(table).get(str(item_id))
        if row is None:
            raise NotFoundError(table, item_id)
        return row

    def _apply_update(self, table: str, item_id: Any, fields: Mapping[str, Any]) -> Row:
        current = self._get(table, item_id)
        old = copy.deepcopy(current)
        changes = {key: copy.deepcopy(value) for key, value in fields.items() if key not in {"id", "created_at"}}
        current.update(changes)
        current["updated_at"] = utcnow().isoformat()
        self._publish(ChangeEvent(ChangeType.UPDATE, table, new_row=copy.deepcopy(current), old_row=old))
        return copy.deepcopy(current)

    @staticmethod
    def _build_row(fields: Mapping[str, Any]) -> Row:
        now = utcnow().isoformat()
        row = copy.deepcopy(dict(fields))
        if row.get("id") is None:
            row["id"] = str(uuid.uuid4())
        row.setdefault("created_at", now)
        row.setdefault("updated_at", now)
        return row

    @staticmethod
    def _matches(row: Row, filters: Mapping[str, Any] | None) -> bool:
        if not filters:
            return True
        for key, expected in filters.items():
            value = row.get(key)
            if expected is None:
                if value is not None:
                    return False
            elif value is None or str(value) != str(expected):
                return False
        return True

    def _issue_session(
        self,
        user_id: str,
        email: str | None,
        metadata: dict[str, Any],
        ttl_seconds: int | None,
    ) -> AuthSession:
        token = issue_access_token(user_id, email, metadata, ttl_seconds)
        claims = decode_access_token(token)
        return AuthSession(
            access_token=token,
            user_id=user_id,
            email=email,
            refresh_token=str(uuid.uuid4()),
            expires_at=claims.expires_at if claims is not None else None,
            user_metadata=dict(metadata),
        )

    async def _enter(self, operation: str, table: str, detail: Any) -> None:
        self.calls.append((operation, table, detail))

        for gate in list(self._gates):
            if gate.operation == operation and gate.table in {None, table}:
                self._gates.remove(gate)
                await gate.release.wait()
                break

        for fault in list(self._faults):
            if fault.operation == operation and fault.table in {None, table}:
                fault.remaining -= 1
                if fault.remaining <= 0:
                    self._faults.remove(fault)
                raise fault.error
