from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


SERVER_FIELDS = frozenset({"id", "created_at", "updated_at"})


class LeadStatus(StrEnum):
    NEW = "Novo"
    CONTACTED = "Contato feito"
    NEGOTIATION = "Em negociação"
    LOST = "Perdido"
    WON = "Ganho"
    CLOSED = "Finalizado"


class ClientStatus(StrEnum):
    ACTIVE = "Ativo"
    INACTIVE = "Inativo"


class TransactionType(StrEnum):
    REVENUE = "revenue"
    EXPENSE = "expense"


class TransactionStatus(StrEnum):
    PAID = "Paid"
    PENDING = "Pending"
    OVERDUE = "Overdue"


class TaxStatus(StrEnum):
    PENDING = "Pending"
    PAID = "Paid"


class EntityModel(BaseModel):
    """Common shape of every remote row.

    ``id`` and the timestamps are assigned by the backend, so they are
    optional on egress and required on ingress (see ``EntityKind.parse``).
    Columns the console does not know about are dropped.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, use_enum_values=True)

    id: str | int | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


# -- people ---------------------------------------------------------------


class UserProfile(EntityModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    active: bool = True
    role: str
    is_admin: bool = Field(default=False, exclude=True)
    sector: str | None = None
    position: str | None = Field(default=None, exclude=True)
    department: str | None = None
    contract_type: str | None = None
    admission_date: dt.date | None = None
    supervisor_id: str | None = None
    avatar_url: str | None = None
    notification_preferences: dict[str, bool] | None = Field(default=None, exclude=True)


class Team(EntityModel):
    name: str = Field(min_length=1)
    # derived from team_members, never written to the teams table
    member_ids: list[str] = Field(default_factory=list, exclude=True)


class TeamMember(EntityModel):
    team_id: str | int
    employee_id: str


# -- crm ------------------------------------------------------------------


class Lead(EntityModel):
    name: str = Field(min_length=1)
    company: str | None = None
    position: str | None = None
    email: str | None = None
    phone: str | None = None
    source: str | None = None
    priority: str | None = None
    status: LeadStatus = LeadStatus.NEW
    owner_id: str | None = None
    project_type: str | None = None
    value: float = 0
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: dt.date | None = None
    converted_to_client_id: str | int | None = None
    internal_notes: str | None = None
    last_status_change_at: dt.datetime | None = None


class LeadNote(EntityModel):
    lead_id: str | int
    text: str = Field(min_length=1)
    author_id: str | None = None
    date: dt.datetime | None = None


class LeadTask(EntityModel):
    lead_id: str | int
    title: str = Field(min_length=1)
    due_date: dt.date | None = None
    completed: bool = False
    priority: str | None = None


class LeadFile(EntityModel):
    lead_id: str | int
    name: str = Field(min_length=1)
    size: str | None = None
    type: str | None = None
    upload_date: dt.date | None = None


class Proposal(EntityModel):
    lead_id: str | int
    title: str = Field(min_length=1)
    total_value: float = 0
    discount: float = 0
    items: list[dict[str, Any]] = Field(default_factory=list)
    sent_at: dt.datetime | None = None
    status: str = "Enviada"
    pdf_url: str | None = None


class FollowUp(EntityModel):
    lead_id: str | int
    type: str
    notes: str = ""
    scheduled_at: dt.datetime | None = None
    completed_at: dt.datetime | None = None
    duration: int | None = None
    outcome: str | None = None
    rating: int | None = Field(default=None, ge=1, le=5)


# -- clients & after-sales ------------------------------------------------


class Client(EntityModel):
    name: str = Field(min_length=1)
    company: str | None = None
    email: str | None = None
    phone: str | None = None
    since: dt.date | None = None
    total_revenue: float = 0
    status: ClientStatus = ClientStatus.ACTIVE
    birthday: dt.date | None = None


class Interaction(EntityModel):
    client_id: str | int
    date: dt.date
    type: str
    notes: str = ""


class Tag(EntityModel):
    text: str = Field(min_length=1)
    color: str = "blue"


class ClientImportantDate(EntityModel):
    client_id: str | int
    date: dt.date
    description: str = ""
    type: str = "Other"


class ClientComplaint(EntityModel):
    client_id: str | int
    date: dt.date
    description: str = Field(min_length=1)
    status: str = "Pendente"
    severity: str = "Média"


class ClientUpsellOpportunity(EntityModel):
    client_id: str | int
    date: dt.date
    description: str = Field(min_length=1)
    value: float = 0
    status: str = "Identificada"


class Feedback(EntityModel):
    client_id: str | int
    project_id: str | int | None = None
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    testimonial: bool = False
    status: str = "Pending"
    date: dt.date | None = None


class Referral(EntityModel):
    referrer_client_id: str | int = Field(alias="client_id")
    referred_client_name: str = Field(min_length=1)
    status: str = "Requested"
    reward_status: str = "None"
    notes: str | None = None
    date: dt.date | None = None


# -- work tracking --------------------------------------------------------


class Task(EntityModel):
    """Older rows only carry ``text``; newer ones carry ``title``."""

    text: str | None = None
    title: str | None = None
    description: str | None = None
    due_date: dt.date | None = None
    completed: bool = False
    priority: str | None = None
    status: str | None = None
    assigned_to: str | None = None
    project_id: str | int | None = None

    @model_validator(mode="after")
    def _has_label(self) -> Task:
        if not (self.title or self.text):
            raise ValueError("either title or text must be set")
        return self

    @property
    def label(self) -> str:
        return self.title or self.text or ""


class Activity(EntityModel):
    actor_id: str
    action: str = Field(min_length=1)
    target: str = ""
    type: str = "task"
    date: dt.datetime | None = None


class Notification(EntityModel):
    title: str = Field(min_length=1)
    message: str = ""
    read: bool = False
    type: str = "info"
    user_id: str | None = None
    date: dt.datetime | None = None


class Report(EntityModel):
    """Daily report. Which metric columns are filled depends on ``role``."""

    employee_id: str
    role: str = "Other"
    date: dt.date
    notes: str = ""
    status: str = "Pendente"
    # sales
    leads_contacted: int | None = None
    sales_qualified_leads: int | None = None
    sales_proposals_sent: int | None = None
    contracts_signed: int | None = None
    sales_revenue: float | None = None
    sales_conversion_rate: float | None = None
    next_actions: str | None = None
    # creative
    projects_shot: int | None = None
    hours_on_location: float | None = None
    equipment_used: str | None = None
    next_steps: str | None = None
    # it
    tickets_resolved: int | None = None
    systems_maintenance: str | None = None
    blockers: str | None = None
    # hr
    hr_employees: int | None = None
    hr_freelancers: int | None = None
    hr_roles: int | None = None
    hr_performance: str | None = None
    hr_performance_score: float | None = None
    hr_productivity: str | None = None
    hr_productivity_score: float | None = None
    hr_absences: int | None = None
    hr_training: str | None = None
    hr_culture: str | None = None


class WeeklyReport(EntityModel):
    employee_id: str
    week_start_date: dt.date
    week_end_date: dt.date
    role_id: str | None = None
    projects_worked: str = ""
    hours_worked: float = 0
    deliveries_made: int = 0
    difficulty_level: int | None = Field(default=None, ge=1, le=5)
    self_evaluation: int | None = Field(default=None, ge=1, le=5)
    main_challenges: str = ""
    improvement_notes: str = ""
    absences_count: int = 0
    absence_type: str | None = None
    attendance_notes: str | None = None
    week_evaluation: int | None = Field(default=None, ge=1, le=5)
    motivation_level: int | None = Field(default=None, ge=1, le=5)
    feedback_text: str | None = None
    confirmed: bool = False


class Goal(EntityModel):
    title: str = Field(min_length=1)
    target: float
    current: float = 0
    type: str = "team"
    employee_id: str | None = None
    unit: str = "count"
    deadline: dt.date | None = None
    updates: list[dict[str, Any]] = Field(default_factory=list)


class CalendarEvent(EntityModel):
    """Agenda entry. The backend table keeps Portuguese column names."""

    title: str = Field(min_length=1, alias="titulo")
    description: str | None = Field(default=None, alias="descricao")
    start_date: dt.datetime = Field(alias="data_inicio")
    end_date: dt.datetime | None = Field(default=None, alias="data_fim")
    location: str | None = Field(default=None, alias="local")
    status: str = "agendado"
    type: str = Field(default="meeting", alias="tipo")
    responsible_id: str | None = None
    attendee_ids: list[str] = Field(default_factory=list)


# -- finance --------------------------------------------------------------


class Transaction(EntityModel):
    date: dt.date
    description: str = Field(min_length=1)
    amount: float
    type: TransactionType
    category: str = ""
    status: TransactionStatus = TransactionStatus.PENDING
    due_date: dt.date | None = None
    issue_date: dt.date | None = None
    payment_date: dt.date | None = None
    project_id: str | int | None = None
    payment_method: str | None = None
    notes: str | None = None
    responsible_id: str | None = None
    active: bool = True


class Budget(EntityModel):
    client_id: str | int
    project_id: str | int | None = None
    title: str = Field(min_length=1)
    date: dt.date | None = None
    validity: dt.date | None = None
    status: str = "Rascunho"
    total_amount: float = 0
    total_value: float = 0
    discount: float = 0
    final_value: float = 0
    notes: str | None = None


class BudgetItem(EntityModel):
    budget_id: str | int
    service: str = Field(min_length=1)
    quantity: float = 1
    unit_price: float = 0
    subtotal: float = 0


class InternalBudget(EntityModel):
    category: str = Field(min_length=1)
    limit: float = 0
    spent: float = 0


class Tax(EntityModel):
    name: str = Field(min_length=1)
    amount: float
    due_date: dt.date | None = None
    status: TaxStatus = TaxStatus.PENDING
    notes: str | None = None
    responsible_id: str | None = None


# -- production, assets & inventory ---------------------------------------


class ProductionProject(EntityModel):
    client_id: str | int | None = None
    title: str = Field(min_length=1)
    type: str | None = None
    status: str = "Pré-produção"
    start_date: dt.date | None = None
    deadline: dt.date | None = None
    responsible_id: str | None = None
    team_ids: list[str] = Field(default_factory=list)
    progress: int = Field(default=0, ge=0, le=100)
    budget: float | None = None
    actual_cost: float | None = None
    notes: str | None = None
    folder_url: str | None = None


class Asset(EntityModel):
    title: str = Field(min_length=1)
    description: str | None = None
    url: str
    thumbnail_url: str | None = None
    type: str = "photo"
    project_id: str | int | None = None
    client_id: str | int | None = None
    folder_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    dimensions: str | None = None
    file_size: str | None = None
    size: int | None = None
    mime_type: str | None = None
    versions: list[dict[str, Any]] = Field(default_factory=list)
    usage_rights: dict[str, Any] | None = None


class Delivery(EntityModel):
    title: str = Field(min_length=1)
    recipient_email: str | None = None
    share_link_token: str
    status: str = "Rascunho"
    expires_at: dt.datetime | None = None
    project_id: str | int | None = None
    created_by: str | None = None
    views: int = 0


class DeliveryItem(EntityModel):
    delivery_id: str | int
    asset_id: str | int


class Equipment(EntityModel):
    name: str = Field(min_length=1)
    category: str = "Other"
    serial_number: str | None = None
    purchase_date: dt.date | None = None
    status: str = "Available"
    last_maintenance: dt.date | None = None
    next_maintenance: dt.date | None = None
    assigned_to: str | None = None
    value: float = 0
    notes: str | None = None


class Sop(EntityModel):
    title: str = Field(min_length=1)
    category: str = ""
    content: str = ""
    author_id: str | None = None
    version: str = "1.0"
    tags: list[str] = Field(default_factory=list)


# -- marketing ------------------------------------------------------------


class MarketingMetric(EntityModel):
    channel: str = Field(min_length=1)
    platform: str | None = None
    reach: int = 0
    engagement: float | None = None
    leads: int = 0
    conversions: int | None = None
    investment: float = 0
    spend: float = 0
    notes: str | None = None
    date: str

    @model_validator(mode="before")
    @classmethod
    def _channel_from_platform(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("channel") and data.get("platform"):
            return {**data, "channel": data["platform"]}
        return data


class EditorialContent(EntityModel):
    title: str = Field(min_length=1)
    platform: str
    type: str | None = None
    format: str = "Photo"
    status: str = "Draft"
    publish_date: dt.date | None = None
    author_id: str | None = None
    responsible_id: str | None = None
    content: str | None = None
    visual_brief: str | None = None


# -- quality --------------------------------------------------------------


class QualityChecklist(EntityModel):
    title: str = Field(min_length=1)
    description: str | None = None
    project_id: str | int | None = None
    status: str = "Rascunho"
    created_by: str | None = None


class QualityChecklistItem(EntityModel):
    checklist_id: str | int
    text: str = Field(min_length=1)
    completed: bool = False


class ClientApproval(EntityModel):
    title: str = Field(min_length=1)
    description: str = ""
    project_id: str | int | None = None
    client_id: str | int
    link_to_deliverable: str = ""
    status: str = "Pendente"
    client_feedback: str | None = None
    sent_date: dt.date | None = None
    requested_by: str | None = None


class QualityRevision(EntityModel):
    project_id: str | int
    version_number: int = Field(ge=1)
    change_log: str = ""
    client_feedback: str | None = None
    date: dt.date | None = None
    author_id: str | None = None
    rework_time: float | None = Field(default=None, alias="rework_time_hours")


# -- hr -------------------------------------------------------------------


class JobRole(EntityModel):
    name: str = Field(min_length=1)
    description: str = ""
    kpis: list[dict[str, Any]] = Field(default_factory=list)


class Freelancer(EntityModel):
    name: str = Field(min_length=1)
    main_function: str = ""
    associated_projects: list[str | int] = Field(default_factory=list)
    average_rating: float = 0
    availability: str = ""
    usage_frequency: str = "baixo"


class Training(EntityModel):
    employee_id: str
    title: str = Field(min_length=1)
    type: str = "Treinamento"
    date: dt.date | None = None
    impact_level: int | None = Field(default=None, ge=1, le=5)
    notes: str | None = None


class CultureFeedback(EntityModel):
    employee_id: str | None = None
    anonymous: bool = False
    motivation_score: int = Field(ge=1, le=5)
    satisfaction_score: int = Field(ge=1, le=5)
    feedback_text: str | None = None
    date: dt.date | None = None


class AttendanceRecord(EntityModel):
    employee_id: str
    date: dt.date
    type: str = "Presença"
    reason: str | None = None
    duration_minutes: int = 0
    status: str = "Pendente"
