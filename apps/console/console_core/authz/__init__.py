from console_core.authz.admin import PermissionAdminService
from console_core.authz.listener import PermissionChangeListener
from console_core.authz.modules import Action, Module
from console_core.authz.resolver import PermissionResolver, check, merge_rules
from console_core.authz.schemas import ActionFlags, EffectivePermissions, PermissionRuleRead, RoleRead

__all__ = [
    "PermissionAdminService",
    "PermissionChangeListener",
    "Action",
    "Module",
    "PermissionResolver",
    "check",
    "merge_rules",
    "ActionFlags",
    "EffectivePermissions",
    "PermissionRuleRead",
    "RoleRead",
]
