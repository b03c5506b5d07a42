from console_core.entities.optimistic import Committed, OptimisticState, Pending, RolledBack
from console_core.entities.registry import ENTITY_KINDS, EntityKind, InsertPosition, get_kind
from console_core.entities.store import EntityCollection, EntityStore
from console_core.entities.workflows import convert_lead_to_client, pay_tax, toggle_transaction_status

__all__ = [
    "Committed",
    "OptimisticState",
    "Pending",
    "RolledBack",
    "ENTITY_KINDS",
    "EntityKind",
    "InsertPosition",
    "get_kind",
    "EntityCollection",
    "EntityStore",
    "convert_lead_to_client",
    "pay_tax",
    "toggle_transaction_status",
]
