from __future__ import annotations

from collections.abc import Generator

import pytest

from console_core.authz.modules import Action, Module
from console_core.authz.resolver import PermissionResolver
from console_core.core.config import get_settings
from console_core.errors import AccountExistsError, SchemaError, TransientGatewayError
from console_core.gateway.base import AuthSession
from console_core.gateway.memory import InMemoryGateway
from console_core.session.provisioning import AccountProvisioner


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RETRY_INITIAL_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.mark.asyncio
async def test_create_account_links_profile_and_rules_to_the_auth_user(gateway: InMemoryGateway) -> None:
    provisioner = AccountProvisioner(gateway)

    principal = await provisioner.create_account(
        "bia@example.com",
        "s3cret",
        {"name": "Bia", "role": "Designer"},
        rules=[{"module": "Production", "can_view": True, "can_edit": True}],
    )

    session = await gateway.sign_in_with_password("bia@example.com", "s3cret")
    assert principal.id == session.user_id
    assert principal.email == "bia@example.com"
    assert [row["id"] for row in gateway.rows("users")] == [principal.id]

    resolver = PermissionResolver(gateway)
    await resolver.resolve(principal)
    assert resolver.check(Module.PRODUCTION, Action.EDIT) is True
    assert resolver.check(Module.CRM, Action.VIEW) is False


@pytest.mark.asyncio
async def test_existing_email_is_rejected_without_retry(gateway: InMemoryGateway) -> None:
    gateway.register_account("bia@example.com", "old")
    provisioner = AccountProvisioner(gateway)

    with pytest.raises(AccountExistsError) as exc_info:
        await provisioner.create_account("bia@example.com", "s3cret", {"name": "Bia", "role": "Designer"})

    assert "already exists" in str(exc_info.value)
    assert "bia@example.com" in str(exc_info.value)
    assert len(gateway.calls_for("sign_up")) == 1
    assert gateway.rows("users") == []


@pytest.mark.asyncio
async def test_transient_sign_up_failures_are_retried(gateway: InMemoryGateway) -> None:
    gateway.fail_next("sign_up", error=TransientGatewayError("timeout", status_code=504), times=2)
    provisioner = AccountProvisioner(gateway)

    principal = await provisioner.create_account("bia@example.com", "s3cret", {"name": "Bia", "role": "Designer"})

    assert len(gateway.calls_for("sign_up")) == 3
    assert principal.name == "Bia"


@pytest.mark.asyncio
async def test_invalid_profile_is_rejected_before_sign_up(gateway: InMemoryGateway) -> None:
    provisioner = AccountProvisioner(gateway)

    with pytest.raises(SchemaError) as exc_info:
        await provisioner.create_account("bia@example.com", "s3cret", {"name": "Bia"})

    assert exc_info.value.kind == "users"
    assert gateway.calls_for("sign_up") == []


@pytest.mark.asyncio
async def test_ensure_profile_uses_metadata_name_and_default_role(gateway: InMemoryGateway) -> None:
    provisioner = AccountProvisioner(gateway)
    session = AuthSession(
        access_token="token",
        user_id="user-5",
        email="carla@example.com",
        user_metadata={"name": "Carla Souza"},
    )

    principal = await provisioner.ensure_profile(session)

    assert principal.id == "user-5"
    assert principal.name == "Carla Souza"
    assert principal.role == get_settings().default_profile_role
    assert principal.active is True
