from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import httpx

from console_core.context import get_correlation_id
from console_core.core.config import Settings, get_settings
from console_core.core.events import InProcessEventBus, InternalEvent
from console_core.errors import (
    AccountExistsError,
    AuthorizationError,
    ConflictError,
    GatewayError,
    NotFoundError,
    TransientGatewayError,
)
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


logger = logging.getLogger("console_core.gateway.rest")

_AUTH_CHANNEL = "auth"
_OBJECT_ACCEPT = "application/vnd.pgrst.object+json"
_ACCOUNT_EXISTS_CODES = {"user_already_exists", "email_exists"}


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def _error_body(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if not isinstance(body, dict):
        return response.text, None
    message = (
        body.get("message")
        or body.get("msg")
        or body.get("error_description")
        or body.get("error")
        or response.reason_phrase
    )
    code = body.get("code") or body.get("error_code") or body.get("error")
    return str(message), None if code is None else str(code)


def map_error(response: httpx.Response, table: str, item_id: Any = None, *, auth: bool = False) -> GatewayError:
    """Translate an error response into the gateway error taxonomy."""

    status_code = response.status_code
    message, code = _error_body(response)

    if code in _ACCOUNT_EXISTS_CODES or (auth and "already registered" in message.lower()):
        return AccountExistsError(message, status_code=status_code, code=code)
    if status_code in {401, 403} or (auth and status_code == 400):
        return AuthorizationError(message, status_code=status_code, code=code)
    if item_id is not None and (status_code == 404 or (status_code == 406 and code == "PGRST116")):
        return NotFoundError(table, item_id)
    if status_code == 409 or code == "23505":
        return ConflictError(message, status_code=status_code, code=code)
    if status_code == 429 or status_code >= 500:
        return TransientGatewayError(message, status_code=status_code, code=code)
    return GatewayError(message, status_code=status_code, code=code)


def session_from_payload(payload: Mapping[str, Any]) -> AuthSession:
    user = payload.get("user") or {}
    expires_at = payload.get("expires_at")
    if expires_at is None and payload.get("expires_in") is not None:
        expires_at = int(datetime.now(timezone.utc).timestamp()) + int(payload["expires_in"])
    return AuthSession(
        access_token=str(payload["access_token"]),
        user_id=str(user.get("id", "")),
        email=user.get("email"),
        refresh_token=payload.get("refresh_token"),
        expires_at=datetime.fromtimestamp(int(expires_at), tz=timezone.utc) if expires_at is not None else None,
        user_metadata=dict(user.get("user_metadata") or {}),
    )


class RestGateway:
    """Backend access over HTTP.

    Data calls follow PostgREST conventions under ``/rest/v1`` and auth
    calls follow GoTrue under ``/auth/v1``. Row changes are observed by
    polling each subscribed table and diffing consecutive snapshots.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.backend_url.rstrip("/"),
            timeout=self._settings.gateway_timeout_seconds,
        )
        self._poll_interval = self._settings.change_poll_interval_seconds if poll_interval is None else poll_interval
        self._session: AuthSession | None = None
        self._auth_bus = InProcessEventBus()
        self._feeds: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> RestGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        feeds = list(self._feeds)
        for task in feeds:
            task.cancel()
        await asyncio.gather(*feeds, return_exceptions=True)
        self._feeds.clear()
        if self._owns_client:
            await self._client.aclose()

    def restore_session(self, session: AuthSession | None) -> None:
        self._session = session

    # -- data -----------------------------------------------------------

    async def fetch_collection(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Row]:
        params: dict[str, str] = {"select": "*"}
        for key, value in (filters or {}).items():
            params[key] = _filter_value(value)
        if order_by is not None:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"

        async with gateway_call("fetch_collection", table):
            response = await self._request("GET", f"/rest/v1/{table}", table, params=params)
            rows = response.json()
            return list(rows) if isinstance(rows, list) else []

    async def fetch_by_id(self, table: str, item_id: Any) -> Row:
        async with gateway_call("fetch_by_id", table):
            response = await self._request(
                "GET",
                f"/rest/v1/{table}",
                table,
                item_id=item_id,
                params={"select": "*", "id": _filter_value(item_id)},
                headers={"Accept": _OBJECT_ACCEPT},
            )
            return dict(response.json())

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Row:
        async with gateway_call("insert", table):
            response = await self._request(
                "POST",
                f"/rest/v1/{table}",
                table,
                params={"select": "*"},
                json=dict(fields),
                headers={"Prefer": "return=representation", "Accept": _OBJECT_ACCEPT},
            )
            return dict(response.json())

    async def update(self, table: str, item_id: Any, fields: Mapping[str, Any]) -> Row:
        async with gateway_call("update", table):
            response = await self._request(
                "PATCH",
                f"/rest/v1/{table}",
                table,
                item_id=item_id,
                params={"select": "*", "id": _filter_value(item_id)},
                json=dict(fields),
                headers={"Prefer": "return=representation", "Accept": _OBJECT_ACCEPT},
            )
            return dict(response.json())

    async def soft_delete(self, table: str, item_id: Any) -> None:
        async with gateway_call("soft_delete", table):
            await self._request(
                "PATCH",
                f"/rest/v1/{table}",
                table,
                item_id=item_id,
                params={"id": _filter_value(item_id)},
                json={"active": False},
                headers={"Prefer": "return=minimal"},
            )

    async def hard_delete(self, table: str, item_id: Any) -> None:
        async with gateway_call("hard_delete", table):
            await self._request(
                "DELETE",
                f"/rest/v1/{table}",
                table,
                item_id=item_id,
                params={"id": _filter_value(item_id)},
                headers={"Prefer": "return=minimal"},
            )

    def subscribe_to_changes(self, table: str, handler: ChangeHandler) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(self._poll(table, handler))
        self._feeds.add(task)
        task.add_done_callback(self._feeds.discard)

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    # -- auth -----------------------------------------------------------

    async def get_session(self) -> AuthSession | None:
        return self._session

    def on_auth_event(self, handler: AuthEventHandler) -> Unsubscribe:
        def deliver(event: InternalEvent) -> None:
            auth_event, session = event.payload
            handler(auth_event, session)

        return self._auth_bus.subscribe(_AUTH_CHANNEL, deliver)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        async with gateway_call("sign_in", _AUTH_CHANNEL):
            response = await self._request(
                "POST",
                "/auth/v1/token",
                _AUTH_CHANNEL,
                params={"grant_type": "password"},
                json={"email": email, "password": password},
                auth=True,
            )
            self._session = session_from_payload(response.json())
        self._emit(AuthEvent.SIGNED_IN, self._session)
        return self._session

    async def refresh_session(self) -> AuthSession | None:
        current = self._session
        if current is None or not current.refresh_token:
            return current
        async with gateway_call("refresh_session", _AUTH_CHANNEL):
            response = await self._request(
                "POST",
                "/auth/v1/token",
                _AUTH_CHANNEL,
                params={"grant_type": "refresh_token"},
                json={"refresh_token": current.refresh_token},
                auth=True,
            )
            self._session = session_from_payload(response.json())
        self._emit(AuthEvent.TOKEN_REFRESHED, self._session)
        return self._session

    async def sign_up(self, email: str, password: str, metadata: Mapping[str, Any] | None = None) -> str:
        async with gateway_call("sign_up", _AUTH_CHANNEL):
            response = await self._request(
                "POST",
                "/auth/v1/signup",
                _AUTH_CHANNEL,
                json={"email": email, "password": password, "data": dict(metadata or {})},
                auth=True,
            )
            payload = response.json()
            user = payload.get("user") or payload
            return str(user["id"])

    async def sign_out(self) -> None:
        had_session = self._session is not None
        try:
            if had_session:
                async with gateway_call("sign_out", _AUTH_CHANNEL):
                    await self._request("POST", "/auth/v1/logout", _AUTH_CHANNEL, auth=True)
        finally:
            self._session = None
            if had_session:
                self._emit(AuthEvent.SIGNED_OUT, None)

    # -- internals ------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        token = self._session.access_token if self._session is not None else self._settings.backend_anon_key
        headers = {
            "apikey": self._settings.backend_anon_key,
            "Authorization": f"Bearer {token}",
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["x-correlation-id"] = correlation_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        table: str,
        *,
        item_id: Any = None,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        auth: bool = False,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers={**self._headers(), **(headers or {})},
            )
        except httpx.TimeoutException as exc:
            raise TransientGatewayError(f"{method} {path} timed out", code="timeout") from exc
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"{method} {path} failed: {exc}", code="transport") from exc

        if response.is_error:
            raise map_error(response, table, item_id, auth=auth)
        return response

    def _emit(self, event: AuthEvent, session: AuthSession | None) -> None:
        self._auth_bus.publish(_AUTH_CHANNEL, (event, session))

    async def _poll(self, table: str, handler: ChangeHandler) -> None:
        snapshot: dict[str, Row] | None = None
        while True:
            try:
                rows = await self.fetch_collection(table)
            except GatewayError as exc:
                logger.warning("gateway.poll_failed", extra={"table": table, "error": str(exc)})
            else:
                current = {str(row.get("id")): row for row in rows}
                if snapshot is not None:
                    for event in diff_snapshots(table, snapshot, current):
                        handler(event)
                snapshot = current
            await asyncio.sleep(self._poll_interval)


def diff_snapshots(table: str, previous: Mapping[str, Row], current: Mapping[str, Row]) -> list[ChangeEvent]:
    events: list[ChangeEvent] = []
    for key, row in current.items():
        old = previous.get(key)
        if old is None:
            events.append(ChangeEvent(ChangeType.INSERT, table, new_row=row))
        elif old != row:
            events.append(ChangeEvent(ChangeType.UPDATE, table, new_row=row, old_row=old))
    for key, row in previous.items():
        if key not in current:
            events.append(ChangeEvent(ChangeType.DELETE, table, old_row=row))
    return events
