from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Generator

import pytest
from jose import jwt

from console_core.authz.listener import PermissionChangeListener
from console_core.authz.modules import Action, Module
from console_core.authz.resolver import PermissionResolver
from console_core.core.config import get_settings
from console_core.core.events import InternalEvent
from console_core.errors import AuthorizationError, GatewayError
from console_core.gateway.base import AuthEvent, AuthSession
from console_core.gateway.memory import InMemoryGateway
from console_core.principal import SessionState
from console_core.session.manager import SESSION_AUTHENTICATED, SESSION_CLEARED, SessionManager
from console_core.session.provisioning import AccountProvisioner


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RETRY_INITIAL_DELAY_SECONDS", "0")
    monkeypatch.setenv("JWT_SECRET", "session-test-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def gateway() -> InMemoryGateway:
    gateway = InMemoryGateway()
    gateway.seed("roles", [{"id": "role-sales", "name": "Sales"}])
    gateway.seed("permissions", [{"id": "r-crm", "role_id": "role-sales", "module": "CRM", "can_view": True}])
    gateway.seed(
        "users",
        [
            {"id": "user-1", "name": "Ana", "email": "ana@example.com", "role": "Sales", "active": True},
            {"id": "user-2", "name": "Rui", "email": "rui@example.com", "role": "Sales", "active": False},
        ],
    )
    gateway.register_account("ana@example.com", "s3cret", user_id="user-1")
    gateway.register_account("rui@example.com", "s3cret", user_id="user-2")
    return gateway


def build(gateway: InMemoryGateway, provisioner: AccountProvisioner | None = None) -> SessionManager:
    resolver = PermissionResolver(gateway)
    listener = PermissionChangeListener(gateway, resolver)
    return SessionManager(gateway, resolver, listener, provisioner=provisioner)


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_establish_without_session_stays_unauthenticated(gateway: InMemoryGateway) -> None:
    manager = build(gateway)

    assert await manager.establish() is None

    assert manager.state == SessionState.UNAUTHENTICATED
    assert manager.permissions is None
    assert gateway.calls_for("fetch_by_id") == []


@pytest.mark.asyncio
async def test_establish_picks_up_existing_session(gateway: InMemoryGateway) -> None:
    gateway.start_session("user-1", "ana@example.com")
    manager = build(gateway)
    published: list[InternalEvent] = []
    manager.events.subscribe(SESSION_AUTHENTICATED, published.append)

    principal = await manager.establish()

    assert principal is not None
    assert principal.id == "user-1"
    assert manager.is_authenticated
    assert manager.permissions is not None
    assert manager.permissions.allows(Module.CRM, Action.VIEW)
    assert gateway.subscriber_count("permissions") == 1
    assert [event.payload.id for event in published] == ["user-1"]

    await manager.sign_out()


@pytest.mark.asyncio
async def test_sign_in_with_wrong_password_passes_backend_message(gateway: InMemoryGateway) -> None:
    manager = build(gateway)

    with pytest.raises(AuthorizationError) as exc_info:
        await manager.sign_in("ana@example.com", "wrong")

    assert str(exc_info.value) == "Invalid login credentials"
    assert manager.state == SessionState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_inactive_principal_is_signed_out(gateway: InMemoryGateway, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    manager = build(gateway)

    principal = await manager.sign_in("rui@example.com", "s3cret")

    assert principal is None
    assert manager.principal is None
    assert manager.state == SessionState.UNAUTHENTICATED
    assert len(gateway.calls_for("sign_out")) == 1
    assert await gateway.get_session() is None
    assert gateway.subscriber_count("permissions") == 0
    records = [record for record in caplog.records if record.getMessage() == "session.inactive_principal"]
    assert getattr(records[0], "principal_id", None) == "user-2"


@pytest.mark.asyncio
async def test_profile_fetch_exhaustion_leaves_session_unauthenticated(gateway: InMemoryGateway) -> None:
    gateway.start_session("user-404", "ghost@example.com")
    manager = build(gateway)

    principal = await manager.establish()

    assert principal is None
    assert manager.state == SessionState.UNAUTHENTICATED
    assert len(gateway.calls_for("fetch_by_id", "users")) == get_settings().retry_max_retries + 1
    assert gateway.calls_for("sign_out") == []


@pytest.mark.asyncio
async def test_missing_profile_is_provisioned_when_enabled(
    gateway: InMemoryGateway, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("AUTO_PROVISION_PROFILES", "true")
    monkeypatch.setenv("RETRY_MAX_RETRIES", "0")
    get_settings.cache_clear()
    gateway.start_session("user-new", "nova@example.com")
    manager = build(gateway, AccountProvisioner(gateway))

    principal = await manager.establish()

    assert principal is not None
    assert principal.name == "nova"
    assert principal.role == get_settings().default_profile_role
    assert [row["id"] for row in gateway.rows("users") if row["id"] == "user-new"] == ["user-new"]

    await manager.sign_out()


@pytest.mark.asyncio
async def test_expired_session_is_treated_as_signed_out(gateway: InMemoryGateway) -> None:
    gateway.start_session("user-1", "ana@example.com", ttl_seconds=-30)
    manager = build(gateway)

    assert await manager.establish() is None

    assert manager.state == SessionState.UNAUTHENTICATED
    assert gateway.calls_for("fetch_by_id") == []


@pytest.mark.asyncio
async def test_permission_failure_clears_state_without_remote_sign_out(gateway: InMemoryGateway) -> None:
    gateway.fail_next("fetch_collection", "roles", times=10)
    gateway.start_session("user-1", "ana@example.com")
    manager = build(gateway)

    assert await manager.establish() is None

    assert manager.principal is None
    assert manager.permissions is None
    assert gateway.calls_for("sign_out") == []


@pytest.mark.asyncio
async def test_sign_out_clears_local_state_even_when_remote_fails(gateway: InMemoryGateway) -> None:
    manager = build(gateway)
    await manager.sign_in("ana@example.com", "s3cret")
    cleared: list[InternalEvent] = []
    manager.events.subscribe(SESSION_CLEARED, cleared.append)
    gateway.fail_next("sign_out", error=GatewayError("network down", status_code=503))

    with pytest.raises(GatewayError):
        await manager.sign_out()

    assert manager.principal is None
    assert manager.permissions is None
    assert manager.state == SessionState.UNAUTHENTICATED
    assert gateway.subscriber_count("permissions") == 0
    assert len(cleared) == 1


@pytest.mark.asyncio
async def test_auth_events_drive_the_session_when_attached(gateway: InMemoryGateway) -> None:
    manager = build(gateway)
    manager.attach()

    await gateway.sign_in_with_password("ana@example.com", "s3cret")
    await manager.wait_idle()
    assert manager.is_authenticated
    assert manager.principal is not None

    gateway.emit_auth_event(AuthEvent.SIGNED_OUT)
    await manager.wait_idle()
    assert manager.state == SessionState.UNAUTHENTICATED
    assert manager.principal is None

    manager.detach()
    await gateway.sign_in_with_password("ana@example.com", "s3cret")
    await settle()
    assert manager.principal is None


@pytest.mark.asyncio
async def test_sign_in_while_attached_bootstraps_once(gateway: InMemoryGateway) -> None:
    manager = build(gateway)
    manager.attach()

    principal = await manager.sign_in("ana@example.com", "s3cret")

    assert principal is not None
    assert len(gateway.calls_for("fetch_by_id", "users")) == 1
    await manager.sign_out()
    await manager.wait_idle()
    manager.detach()


@pytest.mark.asyncio
async def test_sign_out_during_bootstrap_discards_the_late_profile(gateway: InMemoryGateway) -> None:
    gateway.start_session("user-1", "ana@example.com")
    manager = build(gateway)
    release = gateway.hold("fetch_by_id", "users")

    bootstrap = asyncio.create_task(manager.establish())
    await settle()
    assert manager.state == SessionState.LOADING

    await manager.sign_out()
    release.set()
    principal = await bootstrap

    assert principal is None
    assert manager.principal is None
    assert manager.state == SessionState.UNAUTHENTICATED
    assert gateway.subscriber_count("permissions") == 0


@pytest.mark.asyncio
async def test_refresh_principal_signs_out_deactivated_user(gateway: InMemoryGateway) -> None:
    manager = build(gateway)
    await manager.sign_in("ana@example.com", "s3cret")

    await gateway.update("users", "user-1", {"active": False})
    assert await manager.refresh_principal() is None

    assert manager.principal is None
    assert len(gateway.calls_for("sign_out")) == 1


@pytest.mark.asyncio
async def test_refresh_principal_re_resolves_on_role_change(gateway: InMemoryGateway) -> None:
    manager = build(gateway)
    await manager.sign_in("ana@example.com", "s3cret")
    assert manager.permissions is not None and not manager.permissions.bypass

    await gateway.update("users", "user-1", {"role": "Admin"})
    principal = await manager.refresh_principal()

    assert principal is not None and principal.role == "Admin"
    assert manager.permissions is not None and manager.permissions.bypass
    await manager.sign_out()


@pytest.mark.asyncio
async def test_transitions_are_logged(gateway: InMemoryGateway, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    manager = build(gateway)

    await manager.sign_in("ana@example.com", "s3cret")
    await manager.sign_out()

    transitions = [
        (getattr(record, "from_state", None), getattr(record, "to_state", None))
        for record in caplog.records
        if record.name == "console_core.session" and record.getMessage() == "session.transition"
    ]
    assert transitions == [
        ("unauthenticated", "loading"),
        ("loading", "authenticated"),
        ("authenticated", "unauthenticated"),
    ]


@pytest.mark.asyncio
async def test_change_feed_failure_clears_the_half_built_session(
    gateway: InMemoryGateway, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)
    gateway.start_session("user-1", "ana@example.com")
    resolver = PermissionResolver(gateway)
    listener = PermissionChangeListener(gateway, resolver)
    manager = SessionManager(gateway, resolver, listener)

    def refuse(table: str, handler: object) -> None:
        raise ConnectionError("realtime unavailable")

    monkeypatch.setattr(gateway, "subscribe_to_changes", refuse)

    with pytest.raises(ConnectionError):
        await manager.establish()

    assert manager.state == SessionState.UNAUTHENTICATED
    assert manager.principal is None
    assert manager.permissions is None
    assert not listener.active
    [record] = [record for record in caplog.records if record.getMessage() == "session.change_feed_unavailable"]
    assert getattr(record, "principal_id", None) == "user-1"


@pytest.mark.asyncio
async def test_backend_signed_tokens_are_accepted_when_verification_is_off(gateway: InMemoryGateway) -> None:
    token = jwt.encode(
        {"sub": "user-1", "email": "ana@example.com", "exp": int(time.time()) + 600},
        "backend-only-secret",
        algorithm="HS256",
    )
    session = AuthSession(access_token=token, user_id="user-1", email="ana@example.com")
    unverified = get_settings().model_copy(update={"jwt_verify_signature": False})
    resolver = PermissionResolver(gateway, unverified)
    manager = SessionManager(gateway, resolver, PermissionChangeListener(gateway, resolver), settings=unverified)
    strict = build(gateway)

    await manager.handle_auth_event(AuthEvent.SIGNED_IN, session)
    await strict.handle_auth_event(AuthEvent.SIGNED_IN, session)

    assert manager.principal is not None and manager.principal.id == "user-1"
    assert strict.principal is None
    assert strict.state == SessionState.UNAUTHENTICATED
