from __future__ import annotations

import asyncio
import logging
from collections.abc import Generator

import pytest

from console_core.authz.modules import Action, Module
from console_core.authz.resolver import PermissionResolver, check, merge_rules
from console_core.authz.schemas import EffectivePermissions, PermissionRuleRead
from console_core.core.config import get_settings
from console_core.errors import SchemaError, TransientGatewayError
from console_core.gateway.base import ChangeEvent, ChangeType
from console_core.gateway.memory import InMemoryGateway
from console_core.principal import Principal


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RETRY_INITIAL_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def gateway() -> InMemoryGateway:
    gateway = InMemoryGateway()
    gateway.seed("roles", [{"id": "role-sales", "name": "Sales"}, {"id": "role-admin", "name": "Admin"}])
    gateway.seed(
        "permissions",
        [
            {"id": "r-crm", "role_id": "role-sales", "module": "CRM", "can_view": True, "can_create": True},
            {"id": "r-fin", "role_id": "role-sales", "module": "Financial", "can_view": True, "can_edit": True},
            {"id": "u-fin", "user_id": "user-1", "module": "Financial", "can_view": True},
            {"id": "u-other", "user_id": "user-2", "module": "HR", "can_view": True, "can_approve": True},
        ],
    )
    return gateway


def principal(**overrides: object) -> Principal:
    fields: dict[str, object] = {
        "id": "user-1",
        "name": "Ana",
        "email": "ana@example.com",
        "role": "Sales",
        "active": True,
    }
    fields.update(overrides)
    return Principal.model_validate(fields)


def rule(rule_id: str, module: str, **flags: object) -> PermissionRuleRead:
    scope = {"user_id": "user-1"} if str(rule_id).startswith("u") else {"role_id": "role-sales"}
    return PermissionRuleRead.model_validate({"id": rule_id, "module": module, **scope, **flags})


@pytest.mark.asyncio
async def test_principal_row_shadows_the_whole_role_row(gateway: InMemoryGateway) -> None:
    resolver = PermissionResolver(gateway)

    effective = await resolver.resolve(principal())

    assert effective.bypass is False
    assert effective.role_id == "role-sales"
    assert resolver.check(Module.FINANCIAL, Action.VIEW) is True
    assert resolver.check(Module.FINANCIAL, Action.EDIT) is False
    assert resolver.check(Module.CRM, Action.CREATE) is True
    assert resolver.check(Module.CRM, Action.APPROVE) is False
    assert resolver.check(Module.HR, Action.VIEW) is False
    assert effective.rule_ids == frozenset({"r-crm", "r-fin", "u-fin"})


@pytest.mark.asyncio
async def test_bypass_roles_grant_everything_without_fetching_rules(gateway: InMemoryGateway) -> None:
    resolver = PermissionResolver(gateway)

    effective = await resolver.resolve(principal(role="Admin"))

    assert effective.bypass is True
    assert all(resolver.check(module, action) for module in Module for action in Action)
    assert gateway.calls_for("fetch_collection") == []


@pytest.mark.asyncio
async def test_admin_flag_bypasses_regardless_of_role(gateway: InMemoryGateway) -> None:
    resolver = PermissionResolver(gateway)

    effective = await resolver.resolve(principal(is_admin=True))

    assert effective.bypass is True
    assert resolver.check(Module.SETTINGS, Action.APPROVE) is True


@pytest.mark.asyncio
async def test_unknown_role_falls_back_to_principal_rows(gateway: InMemoryGateway) -> None:
    resolver = PermissionResolver(gateway)

    effective = await resolver.resolve(principal(role="Intern"))

    assert effective.role_id is None
    assert resolver.check(Module.FINANCIAL, Action.VIEW) is True
    assert resolver.check(Module.CRM, Action.VIEW) is False


def test_check_denies_without_permissions_or_for_unknown_names() -> None:
    modules = merge_rules([rule("r-crm", "CRM", can_view=True)], [])
    permissions = EffectivePermissions(principal_id="user-1", modules=modules)

    assert check(None, Module.CRM, Action.VIEW) is False
    assert check(permissions, "Nope", Action.VIEW) is False
    assert check(permissions, Module.CRM, "delete") is False
    assert check(permissions, "CRM", "view") is True
    assert check(permissions, "CRM & Vendas", "view") is True


def test_merge_skips_unknown_modules_and_keeps_first_duplicate(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    merged = merge_rules(
        [
            rule("r-1", "Financeiro", can_view=True),
            rule("r-2", "Financial", can_view=True, can_edit=True),
            rule("r-3", "Warehouse", can_view=True),
        ],
        [],
    )

    assert set(merged) == {Module.FINANCIAL}
    assert merged[Module.FINANCIAL].edit is False

    messages = [record.getMessage() for record in caplog.records if record.name == "console_core.authz"]
    assert "authz.duplicate_rule" in messages
    assert "authz.unknown_module" in messages
    unknown = next(record for record in caplog.records if record.getMessage() == "authz.unknown_module")
    assert getattr(unknown, "module", None) == "Warehouse"


@pytest.mark.asyncio
async def test_malformed_rule_row_is_a_schema_error(gateway: InMemoryGateway) -> None:
    gateway.seed(
        "permissions",
        [{"id": "bad", "user_id": "user-1", "module": "", "can_view": True}],
    )
    resolver = PermissionResolver(gateway)

    with pytest.raises(SchemaError) as exc_info:
        await resolver.resolve(principal(role="Intern"))

    assert exc_info.value.kind == "permissions"
    assert resolver.current is None


@pytest.mark.asyncio
async def test_transient_failures_are_retried(gateway: InMemoryGateway) -> None:
    gateway.fail_next(
        "fetch_collection",
        "permissions",
        error=TransientGatewayError("upstream timeout", status_code=503),
        times=2,
    )
    resolver = PermissionResolver(gateway)

    await resolver.resolve(principal())

    assert resolver.check(Module.CRM, Action.VIEW) is True
    assert len(gateway.calls_for("fetch_collection", "permissions")) == 4


@pytest.mark.asyncio
async def test_older_resolution_is_discarded_when_a_newer_one_completes(gateway: InMemoryGateway) -> None:
    resolver = PermissionResolver(gateway)
    release = gateway.hold("fetch_collection", "roles")

    slow = asyncio.create_task(resolver.resolve(principal()))
    await asyncio.sleep(0)

    fast = await resolver.resolve(principal(role="Admin"))
    release.set()
    stale = await slow

    assert stale.bypass is False
    assert resolver.current is fast
    assert resolver.current.bypass is True


@pytest.mark.asyncio
async def test_clear_drops_permissions_and_discards_inflight_result(gateway: InMemoryGateway) -> None:
    resolver = PermissionResolver(gateway)
    release = gateway.hold("fetch_collection", "roles")

    pending = asyncio.create_task(resolver.resolve(principal()))
    await asyncio.sleep(0)
    resolver.clear()
    release.set()
    await pending

    assert resolver.current is None
    assert resolver.principal is None
    assert await resolver.refresh() is None


@pytest.mark.asyncio
async def test_relevance_of_permission_changes(gateway: InMemoryGateway) -> None:
    resolver = PermissionResolver(gateway)
    await resolver.resolve(principal())

    own_rule = ChangeEvent(ChangeType.UPDATE, "permissions", new_row={"id": "u-fin", "user_id": "user-1"})
    new_own_rule = ChangeEvent(ChangeType.INSERT, "permissions", new_row={"id": "n-1", "user_id": "user-1"})
    role_rule = ChangeEvent(ChangeType.INSERT, "permissions", new_row={"id": "n-2", "role_id": "role-sales"})
    deleted_rule = ChangeEvent(ChangeType.DELETE, "permissions", old_row={"id": "r-crm", "role_id": "role-sales"})
    other = ChangeEvent(ChangeType.UPDATE, "permissions", new_row={"id": "u-other", "user_id": "user-2"})
    other_role = ChangeEvent(ChangeType.INSERT, "permissions", new_row={"id": "n-3", "role_id": "role-admin"})

    assert resolver.is_relevant(own_rule)
    assert resolver.is_relevant(new_own_rule)
    assert resolver.is_relevant(role_rule)
    assert resolver.is_relevant(deleted_rule)
    assert not resolver.is_relevant(other)
    assert not resolver.is_relevant(other_role)


@pytest.mark.asyncio
async def test_resolution_is_logged(gateway: InMemoryGateway, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    resolver = PermissionResolver(gateway)

    await resolver.resolve(principal())

    records = [record for record in caplog.records if record.getMessage() == "authz.resolved"]
    assert len(records) == 1
    assert getattr(records[0], "principal_id", None) == "user-1"
    assert getattr(records[0], "status", None) == "2 modules"
