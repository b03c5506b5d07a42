from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from console_core.authz.modules import Action, Module
from console_core.errors import SchemaError


PERMISSIONS_TABLE = "permissions"
ROLES_TABLE = "roles"

_ACTION_COLUMNS = {
    Action.VIEW: "can_view",
    Action.CREATE: "can_create",
    Action.EDIT: "can_edit",
    Action.APPROVE: "can_approve",
}


def action_column(action: Action) -> str:
    return _ACTION_COLUMNS[action]


class RoleRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | int
    name: str = Field(min_length=1)


class ActionFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    view: bool = False
    create: bool = False
    edit: bool = False
    approve: bool = False

    @classmethod
    def all(cls) -> ActionFlags:
        return cls(view=True, create=True, edit=True, approve=True)

    def allows(self, action: Action) -> bool:
        return bool(getattr(self, action.value))


class PermissionRuleCreate(BaseModel):
    module: str = Field(min_length=1)
    can_view: bool = False
    can_create: bool = False
    can_edit: bool = False
    can_approve: bool = False
    role_id: str | int | None = None
    user_id: str | None = None

    @model_validator(mode="after")
    def _single_scope(self) -> PermissionRuleCreate:
        if (self.role_id is None) == (self.user_id is None):
            raise ValueError("exactly one of role_id or user_id must be set")
        return self


class PermissionRuleRead(PermissionRuleCreate):
    model_config = ConfigDict(extra="ignore")

    id: str | int

    @property
    def flags(self) -> ActionFlags:
        return ActionFlags(view=self.can_view, create=self.can_create, edit=self.can_edit, approve=self.can_approve)

    @property
    def scope(self) -> tuple[str, str]:
        if self.user_id is not None:
            return ("user", str(self.user_id))
        return ("role", str(self.role_id))


def parse_rule(row: Mapping[str, Any]) -> PermissionRuleRead:
    try:
        return PermissionRuleRead.model_validate(dict(row))
    except ValidationError as exc:
        raise SchemaError(PERMISSIONS_TABLE, exc.errors()) from exc


def parse_role(row: Mapping[str, Any]) -> RoleRead:
    try:
        return RoleRead.model_validate(dict(row))
    except ValidationError as exc:
        raise SchemaError(ROLES_TABLE, exc.errors()) from exc


@dataclass(frozen=True, slots=True)
class EffectivePermissions:
    """Resolved grants of one principal. Replaced wholesale on every refresh."""

    principal_id: str
    bypass: bool = False
    modules: Mapping[Module, ActionFlags] = field(default_factory=dict)
    rule_ids: frozenset[str] = frozenset()
    role_id: str | None = None

    def allows(self, module: Module | str, action: Action | str) -> bool:
        if isinstance(module, str) and not isinstance(module, Module):
            parsed = Module.parse(module)
            if parsed is None:
                return False
            module = parsed
        try:
            action = Action(action)
        except ValueError:
            return False
        if self.bypass:
            return True
        flags = self.modules.get(module)
        return flags is not None and flags.allows(action)
