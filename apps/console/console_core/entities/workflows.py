from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

from opentelemetry import trace

from console_core.context import correlation_scope
from console_core.entities.schemas import (
    Activity,
    Client,
    ClientStatus,
    Lead,
    LeadStatus,
    Tax,
    TaxStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from console_core.entities.store import EntityStore
from console_core.errors import CompositeOperationError, InvalidOperationError, NotFoundError


logger = logging.getLogger("console_core.workflows")
tracer = trace.get_tracer("console_core.workflows")

TAX_EXPENSE_CATEGORY = "Impostos"


@dataclass(slots=True)
class LeadConversion:
    lead: Lead
    client: Client
    activity: Activity | None = None


@dataclass(slots=True)
class TaxPayment:
    tax: Tax
    expense: Transaction | None = None


class _Steps:
    """Runs the steps of a composite write and records what completed.

    A failure in the first step propagates unchanged. A failure in a later
    step raises ``CompositeOperationError``; completed steps stay applied.
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.completed: dict[str, Any] = {}

    async def run(self, step: str, call: Any) -> Any:
        try:
            result = await call
        except Exception as exc:
            if not self.completed:
                raise
            logger.error(
                "workflow.partial_failure",
                extra={"operation": self.operation, "step": step, "error": str(exc)},
            )
            raise CompositeOperationError(self.operation, step, dict(self.completed), exc) from exc
        self.completed[step] = result
        return result


async def convert_lead_to_client(
    store: EntityStore,
    lead_id: Any,
    *,
    actor_id: str | None = None,
    today: date | None = None,
) -> LeadConversion:
    leads = store.collection("leads")
    lead: Lead | None = leads.get(lead_id)
    if lead is None:
        raise NotFoundError(leads.kind.table, lead_id)
    if lead.converted_to_client_id is not None:
        raise InvalidOperationError(f"lead '{lead_id}' was already converted to client '{lead.converted_to_client_id}'")

    steps = _Steps("convert_lead_to_client")
    with correlation_scope(), tracer.start_as_current_span("workflows.convert_lead_to_client") as span:
        span.set_attribute("entity_id", str(lead_id))
        client: Client = await steps.run(
            "create_client",
            store.collection("clients").create(
                {
                    "name": lead.name,
                    "company": lead.company,
                    "email": lead.email,
                    "phone": lead.phone,
                    "since": (today or date.today()).isoformat(),
                    "total_revenue": lead.value,
                    "status": ClientStatus.ACTIVE,
                }
            ),
        )
        updated_lead: Lead = await steps.run(
            "update_lead",
            leads.patch(lead_id, {"status": LeadStatus.CLOSED, "converted_to_client_id": client.id}),
        )

        activity: Activity | None = None
        if actor_id is not None and "activities" in store:
            activity = await steps.run(
                "record_activity",
                store.collection("activities").create(
                    {"actor_id": actor_id, "action": "converted lead to client", "target": lead.name, "type": "client"}
                ),
            )

    logger.info(
        "workflow.completed",
        extra={"operation": "convert_lead_to_client", "entity_id": str(lead_id)},
    )
    return LeadConversion(lead=updated_lead, client=client, activity=activity)


async def pay_tax(
    store: EntityStore,
    tax_id: Any,
    *,
    record_expense: bool = False,
    today: date | None = None,
) -> TaxPayment:
    taxes = store.collection("taxes")
    tax: Tax | None = taxes.get(tax_id)
    if tax is None:
        raise NotFoundError(taxes.kind.table, tax_id)
    if tax.status == TaxStatus.PAID:
        raise InvalidOperationError(f"tax '{tax_id}' is already paid")

    steps = _Steps("pay_tax")
    with correlation_scope(), tracer.start_as_current_span("workflows.pay_tax") as span:
        span.set_attribute("entity_id", str(tax_id))
        paid: Tax = await steps.run("mark_paid", taxes.patch(tax_id, {"status": TaxStatus.PAID}))

        expense: Transaction | None = None
        if record_expense:
            expense = await steps.run(
                "record_expense",
                store.collection("transactions").create(
                    {
                        "description": f"Pagamento de Imposto: {paid.name}",
                        "amount": paid.amount,
                        "date": (today or date.today()).isoformat(),
                        "type": TransactionType.EXPENSE,
                        "category": TAX_EXPENSE_CATEGORY,
                        "status": TransactionStatus.PAID,
                    }
                ),
            )

    logger.info("workflow.completed", extra={"operation": "pay_tax", "entity_id": str(tax_id)})
    return TaxPayment(tax=paid, expense=expense)


async def toggle_transaction_status(store: EntityStore, transaction_id: Any) -> Transaction:
    """Flip ``active`` on a transaction. This is a plain update, not a delete."""

    transactions = store.collection("transactions")
    transaction: Transaction | None = transactions.get(transaction_id)
    if transaction is None:
        raise NotFoundError(transactions.kind.table, transaction_id)
    return await transactions.patch(transaction_id, {"active": not transaction.active})
