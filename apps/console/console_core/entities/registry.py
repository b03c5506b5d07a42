from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

from console_core.entities import schemas
from console_core.entities.schemas import SERVER_FIELDS, EntityModel
from console_core.errors import SchemaError


ModelT = TypeVar("ModelT", bound=EntityModel)


class InsertPosition(StrEnum):
    START = "start"
    END = "end"


@dataclass(frozen=True, slots=True)
class EntityKind(Generic[ModelT]):
    name: str
    table: str
    model: type[ModelT]
    order_by: str = "created_at"
    descending: bool = True
    insert_at: InsertPosition = InsertPosition.START

    @property
    def soft_delete(self) -> bool:
        return "active" in self.model.model_fields

    def parse(self, row: Mapping[str, Any]) -> ModelT:
        """Validate a row coming from the backend."""

        if row.get("id") is None:
            raise SchemaError(self.name, [{"loc": ("id",), "msg": "Field required", "type": "missing"}])
        try:
            return self.model.model_validate(dict(row))
        except ValidationError as exc:
            raise SchemaError(self.name, exc.errors()) from exc

    def parse_many(self, rows: list[Mapping[str, Any]]) -> list[ModelT]:
        return [self.parse(row) for row in rows]

    def dump_new(self, fields: Mapping[str, Any] | EntityModel) -> dict[str, Any]:
        """Validate creation input and return the columns to insert."""

        return self.dump_full(fields)

    def dump_full(self, item: Mapping[str, Any] | EntityModel) -> dict[str, Any]:
        model = self._coerce(item)
        return model.model_dump(mode="json", by_alias=True, exclude=set(SERVER_FIELDS))

    def dump_patch(self, current: EntityModel, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Validate a partial change against the current item.

        Only the patched columns are returned, under their backend names.
        Unknown, derived and server managed fields are rejected.
        """

        writable = self.writable_fields
        unknown = [key for key in fields if key not in writable]
        if unknown:
            raise SchemaError(
                self.name,
                [{"loc": (key,), "msg": "Field is not writable", "type": "extra_forbidden"} for key in unknown],
            )
        merged = current.model_dump() | dict(fields)
        model = self._coerce(merged)
        return model.model_dump(mode="json", by_alias=True, include=set(fields))

    @property
    def writable_fields(self) -> frozenset[str]:
        return frozenset(
            name
            for name, field in self.model.model_fields.items()
            if name not in SERVER_FIELDS and not field.exclude
        )

    def _coerce(self, value: Mapping[str, Any] | EntityModel) -> ModelT:
        data = value.model_dump() if isinstance(value, EntityModel) else dict(value)
        try:
            return self.model.model_validate(data)
        except ValidationError as exc:
            raise SchemaError(self.name, exc.errors()) from exc


def _kind(name: str, model: type[EntityModel], table: str | None = None, **options: Any) -> EntityKind[Any]:
    return EntityKind(name=name, table=table or name, model=model, **options)


_BY_NAME = {"order_by": "name", "descending": False, "insert_at": InsertPosition.END}
_CHRONOLOGICAL = {"descending": False, "insert_at": InsertPosition.END}

USERS = _kind("users", schemas.UserProfile, **_BY_NAME)
LEADS = _kind("leads", schemas.Lead)
LEAD_NOTES = _kind("lead_notes", schemas.LeadNote)
LEAD_TASKS = _kind("lead_tasks", schemas.LeadTask, **_CHRONOLOGICAL)
LEAD_FILES = _kind("lead_files", schemas.LeadFile)
CLIENTS = _kind("clients", schemas.Client)
INTERACTIONS = _kind("interactions", schemas.Interaction, order_by="date")
TAGS = _kind("tags", schemas.Tag, order_by="text", descending=False, insert_at=InsertPosition.END)
CLIENT_IMPORTANT_DATES = _kind("client_important_dates", schemas.ClientImportantDate, order_by="date", descending=False, insert_at=InsertPosition.END)
CLIENT_COMPLAINTS = _kind("client_complaints", schemas.ClientComplaint, order_by="date")
CLIENT_UPSELL_OPPORTUNITIES = _kind("client_upsell_opportunities", schemas.ClientUpsellOpportunity, order_by="date")
FEEDBACKS = _kind("feedbacks", schemas.Feedback)
REFERRALS = _kind("referrals", schemas.Referral)
PROPOSALS = _kind("proposals", schemas.Proposal)
FOLLOW_UPS = _kind("follow_ups", schemas.FollowUp)
TEAMS = _kind("teams", schemas.Team, **_BY_NAME)
TEAM_MEMBERS = _kind("team_members", schemas.TeamMember, **_CHRONOLOGICAL)
TASKS = _kind("tasks", schemas.Task)
ACTIVITIES = _kind("activities", schemas.Activity)
NOTIFICATIONS = _kind("notifications", schemas.Notification)
REPORTS = _kind("reports", schemas.Report)
WEEKLY_REPORTS = _kind("weekly_reports", schemas.WeeklyReport, order_by="week_start_date")
GOALS = _kind("goals", schemas.Goal)
CALENDAR_EVENTS = _kind("calendar_events", schemas.CalendarEvent, table="agenda_eventos", order_by="data_inicio", descending=False, insert_at=InsertPosition.END)
TRANSACTIONS = _kind("transactions", schemas.Transaction, order_by="date")
BUDGETS = _kind("budgets", schemas.Budget)
BUDGET_ITEMS = _kind("budget_items", schemas.BudgetItem, **_CHRONOLOGICAL)
INTERNAL_BUDGETS = _kind("internal_budgets", schemas.InternalBudget, order_by="category", descending=False, insert_at=InsertPosition.END)
TAXES = _kind("taxes", schemas.Tax, order_by="due_date", descending=False, insert_at=InsertPosition.END)
PRODUCTION_PROJECTS = _kind("production_projects", schemas.ProductionProject)
ASSETS = _kind("assets", schemas.Asset)
DELIVERIES = _kind("deliveries", schemas.Delivery)
DELIVERY_ITEMS = _kind("delivery_items", schemas.DeliveryItem, **_CHRONOLOGICAL)
EQUIPMENT = _kind("equipment", schemas.Equipment, **_BY_NAME)
SOPS = _kind("sops", schemas.Sop, order_by="updated_at")
MARKETING_METRICS = _kind("marketing_metrics", schemas.MarketingMetric, order_by="date")
EDITORIAL_CONTENT = _kind("editorial_content", schemas.EditorialContent, order_by="publish_date")
QUALITY_CHECKLISTS = _kind("quality_checklists", schemas.QualityChecklist)
QUALITY_CHECKLIST_ITEMS = _kind("quality_checklist_items", schemas.QualityChecklistItem, **_CHRONOLOGICAL)
CLIENT_APPROVALS = _kind("client_approvals", schemas.ClientApproval)
QUALITY_REVISIONS = _kind("quality_revisions", schemas.QualityRevision)
JOB_ROLES = _kind("job_roles", schemas.JobRole, **_BY_NAME)
FREELANCERS = _kind("freelancers", schemas.Freelancer, **_BY_NAME)
TRAININGS = _kind("trainings", schemas.Training)
CULTURE_FEEDBACK = _kind("culture_feedback", schemas.CultureFeedback)
ATTENDANCE_RECORDS = _kind("attendance_records", schemas.AttendanceRecord, order_by="date")


ENTITY_KINDS: dict[str, EntityKind[Any]] = {
    kind.name: kind
    for kind in (
        USERS,
        LEADS,
        LEAD_NOTES,
        LEAD_TASKS,
        LEAD_FILES,
        CLIENTS,
        INTERACTIONS,
        TAGS,
        CLIENT_IMPORTANT_DATES,
        CLIENT_COMPLAINTS,
        CLIENT_UPSELL_OPPORTUNITIES,
        FEEDBACKS,
        REFERRALS,
        PROPOSALS,
        FOLLOW_UPS,
        TEAMS,
        TEAM_MEMBERS,
        TASKS,
        ACTIVITIES,
        NOTIFICATIONS,
        REPORTS,
        WEEKLY_REPORTS,
        GOALS,
        CALENDAR_EVENTS,
        TRANSACTIONS,
        BUDGETS,
        BUDGET_ITEMS,
        INTERNAL_BUDGETS,
        TAXES,
        PRODUCTION_PROJECTS,
        ASSETS,
        DELIVERIES,
        DELIVERY_ITEMS,
        EQUIPMENT,
        SOPS,
        MARKETING_METRICS,
        EDITORIAL_CONTENT,
        QUALITY_CHECKLISTS,
        QUALITY_CHECKLIST_ITEMS,
        CLIENT_APPROVALS,
        QUALITY_REVISIONS,
        JOB_ROLES,
        FREELANCERS,
        TRAININGS,
        CULTURE_FEEDBACK,
        ATTENDANCE_RECORDS,
    )
}


def get_kind(name: str) -> EntityKind[Any]:
    try:
        return ENTITY_KINDS[name]
    except KeyError:
        raise KeyError(f"unknown entity kind '{name}'") from None
