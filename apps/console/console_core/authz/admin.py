from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from console_core.authz.modules import Action, Module
from console_core.authz.schemas import (
    PERMISSIONS_TABLE,
    ROLES_TABLE,
    PermissionRuleCreate,
    PermissionRuleRead,
    RoleRead,
    action_column,
    parse_role,
    parse_rule,
)
from console_core.errors import ConflictError, InvalidOperationError, SchemaError
from console_core.gateway.base import RemoteGateway
from console_core.retry import with_retry


logger = logging.getLogger("console_core.authz.admin")


def _scope_filters(role_id: Any, user_id: Any) -> dict[str, Any]:
    if (role_id is None) == (user_id is None):
        raise InvalidOperationError("exactly one of role_id or user_id must be given")
    if role_id is not None:
        return {"role_id": str(role_id), "user_id": None}
    return {"user_id": str(user_id), "role_id": None}


class PermissionAdminService:
    """Reads and edits permission rows for one role or one principal.

    Reads are retried. Writes are mutations and surface failures right away.
    """

    def __init__(self, gateway: RemoteGateway) -> None:
        self._gateway = gateway

    async def list_roles(self) -> list[RoleRead]:
        rows = await with_retry(
            lambda: self._gateway.fetch_collection(ROLES_TABLE, order_by="name"),
            operation_name="authz.list_roles",
        )
        return [parse_role(row) for row in rows]

    async def list_rules(self, *, role_id: Any = None, user_id: Any = None) -> list[PermissionRuleRead]:
        filters = _scope_filters(role_id, user_id)
        rows = await with_retry(
            lambda: self._gateway.fetch_collection(PERMISSIONS_TABLE, filters=filters),
            operation_name="authz.list_rules",
        )
        return [parse_rule(row) for row in rows]

    async def toggle(
        self,
        module: Module,
        action: Action,
        *,
        role_id: Any = None,
        user_id: Any = None,
    ) -> PermissionRuleRead:
        """Flip one action for a scope.

        The existing row for the module is updated in place; when there is
        none, a row granting only ``action`` is created. One row per
        (module, scope) is kept.
        """

        rules = await self.list_rules(role_id=role_id, user_id=user_id)
        column = action_column(action)
        existing = next((rule for rule in rules if Module.parse(rule.module) == module), None)

        if existing is not None:
            row = await self._gateway.update(
                PERMISSIONS_TABLE, existing.id, {column: not getattr(existing, column)}
            )
            saved = parse_rule(row)
        else:
            saved = await self.create_rule(
                {"module": module.value, column: True, "role_id": role_id, "user_id": user_id}
            )

        logger.info(
            "authz.rule_toggled",
            extra={"module": module.value, "operation": action.value, "entity_id": str(saved.id)},
        )
        return saved

    async def create_rule(self, fields: Mapping[str, Any]) -> PermissionRuleRead:
        """Insert one rule row, stored under the canonical module identifier.

        Raises ``SchemaError`` for unknown modules and ``ConflictError`` when
        the scope already has a row for the module.
        """

        try:
            payload = PermissionRuleCreate.model_validate(dict(fields))
        except ValidationError as exc:
            raise SchemaError(PERMISSIONS_TABLE, exc.errors()) from exc
        module = Module.parse(payload.module)
        if module is None:
            raise SchemaError(
                PERMISSIONS_TABLE,
                [{"loc": ("module",), "msg": f"unknown module '{payload.module}'", "type": "value_error"}],
            )

        existing = await self.list_rules(role_id=payload.role_id, user_id=payload.user_id)
        if any(Module.parse(rule.module) == module for rule in existing):
            scope, target = ("role", payload.role_id) if payload.role_id is not None else ("user", payload.user_id)
            logger.warning(
                "authz.rule_conflict",
                extra={"module": module.value, "status": f"{scope} {target}"},
            )
            raise ConflictError("permission already exists", status_code=409, code="duplicate_rule")

        row = await self._gateway.insert(
            PERMISSIONS_TABLE, payload.model_copy(update={"module": module.value}).model_dump(mode="json")
        )
        return parse_rule(row)

    async def grant_to_principal(
        self, user_id: str, rules: Iterable[Mapping[str, Any]]
    ) -> list[PermissionRuleRead]:
        """Create principal-scoped rows, one per module."""

        created: list[PermissionRuleRead] = []
        seen: set[Module | str] = set()
        for rule in rules:
            name = str(rule.get("module", ""))
            key = Module.parse(name) or name
            if key in seen:
                continue
            seen.add(key)
            created.append(await self.create_rule({**rule, "user_id": user_id, "role_id": None}))
        return created
