from __future__ import annotations

import logging
from collections.abc import Iterable

from opentelemetry import trace

from console_core.authz.modules import Action, Module
from console_core.authz.schemas import (
    PERMISSIONS_TABLE,
    ROLES_TABLE,
    ActionFlags,
    EffectivePermissions,
    PermissionRuleRead,
    parse_role,
    parse_rule,
)
from console_core.core.config import Settings, get_settings
from console_core.gateway.base import ChangeEvent, RemoteGateway
from console_core.metrics import observe_permission_resolution
from console_core.principal import Principal
from console_core.retry import with_retry


logger = logging.getLogger("console_core.authz")
tracer = trace.get_tracer("console_core.authz")


def check(effective: EffectivePermissions | None, module: Module | str, action: Action | str) -> bool:
    """Pure lookup. No permissions, unknown modules and missing rows all deny."""

    if effective is None:
        return False
    return effective.allows(module, action)


def merge_rules(
    role_rules: Iterable[PermissionRuleRead],
    principal_rules: Iterable[PermissionRuleRead],
) -> dict[Module, ActionFlags]:
    """Role rows first, then principal rows replace the whole row per module."""

    merged: dict[Module, ActionFlags] = {}
    for source, rules in (("role", role_rules), ("principal", principal_rules)):
        seen: set[Module] = set()
        for rule in rules:
            module = Module.parse(rule.module)
            if module is None:
                logger.warning(
                    "authz.unknown_module",
                    extra={"module": rule.module, "entity_id": str(rule.id), "status": source},
                )
                continue
            if module in seen:
                logger.warning(
                    "authz.duplicate_rule",
                    extra={"module": module.value, "entity_id": str(rule.id), "status": source},
                )
                continue
            seen.add(module)
            merged[module] = rule.flags
    return merged


class PermissionResolver:
    """Computes and holds the effective permissions of the current principal.

    Refreshes may overlap. Each resolution takes a generation number and only
    the newest one is installed; older completions are discarded.
    """

    def __init__(self, gateway: RemoteGateway, settings: Settings | None = None) -> None:
        self._gateway = gateway
        self._settings = settings or get_settings()
        self._principal: Principal | None = None
        self._current: EffectivePermissions | None = None
        self._generation = 0

    @property
    def current(self) -> EffectivePermissions | None:
        return self._current

    @property
    def principal(self) -> Principal | None:
        return self._principal

    def is_bypass(self, principal: Principal) -> bool:
        return principal.is_admin or principal.role in self._settings.bypass_role_names

    async def resolve(self, principal: Principal) -> EffectivePermissions:
        self._generation += 1
        generation = self._generation
        self._principal = principal

        with tracer.start_as_current_span("authz.resolve") as span:
            span.set_attribute("principal_id", principal.id)
            try:
                effective = await self._compute(principal)
            except Exception:
                observe_permission_resolution("error")
                raise
            span.set_attribute("bypass", effective.bypass)

        if generation != self._generation:
            observe_permission_resolution("discarded")
            logger.info("authz.resolution_discarded", extra={"principal_id": principal.id})
            return effective

        self._current = effective
        observe_permission_resolution("bypass" if effective.bypass else "rules")
        logger.info(
            "authz.resolved",
            extra={
                "principal_id": principal.id,
                "status": "bypass" if effective.bypass else f"{len(effective.modules)} modules",
            },
        )
        return effective

    async def refresh(self) -> EffectivePermissions | None:
        if self._principal is None:
            return None
        return await self.resolve(self._principal)

    def clear(self) -> None:
        self._generation += 1
        self._principal = None
        self._current = None

    def is_relevant(self, event: ChangeEvent) -> bool:
        principal = self._principal
        current = self._current
        if principal is None or current is None:
            return False

        rows = [row for row in (event.new_row, event.old_row) if row]
        for row in rows:
            if row.get("id") is not None and str(row["id"]) in current.rule_ids:
                return True
            if row.get("user_id") is not None and str(row["user_id"]) == principal.id:
                return True
            if current.role_id is not None and row.get("role_id") is not None and str(row["role_id"]) == current.role_id:
                return True
        return False

    def check(self, module: Module | str, action: Action | str) -> bool:
        return check(self._current, module, action)

    async def _compute(self, principal: Principal) -> EffectivePermissions:
        if self.is_bypass(principal):
            return EffectivePermissions(principal_id=principal.id, bypass=True)

        role_id: str | None = None
        role_rules: list[PermissionRuleRead] = []
        role_rows = await with_retry(
            lambda: self._gateway.fetch_collection(ROLES_TABLE, filters={"name": principal.role}),
            operation_name="authz.fetch_role",
        )
        if role_rows:
            role_id = str(parse_role(role_rows[0]).id)
            rows = await with_retry(
                lambda: self._gateway.fetch_collection(
                    PERMISSIONS_TABLE, filters={"role_id": role_id, "user_id": None}
                ),
                operation_name="authz.fetch_role_rules",
            )
            role_rules = [parse_rule(row) for row in rows]
        else:
            logger.warning("authz.role_not_found", extra={"principal_id": principal.id, "status": principal.role})

        rows = await with_retry(
            lambda: self._gateway.fetch_collection(
                PERMISSIONS_TABLE, filters={"user_id": principal.id, "role_id": None}
            ),
            operation_name="authz.fetch_principal_rules",
        )
        principal_rules = [parse_rule(row) for row in rows]

        return EffectivePermissions(
            principal_id=principal.id,
            modules=merge_rules(role_rules, principal_rules),
            rule_ids=frozenset(str(rule.id) for rule in (*role_rules, *principal_rules)),
            role_id=role_id,
        )
