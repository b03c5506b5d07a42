from __future__ import annotations

from enum import StrEnum


class Module(StrEnum):
    DASHBOARD = "Dashboard"
    CRM = "CRM"
    CLIENTS = "Clients"
    PRODUCTION = "Production"
    PROJECT_MANAGEMENT = "ProjectManagement"
    DAM = "DAM"
    INVENTORY = "Inventory"
    FINANCIAL = "Financial"
    HR = "HR"
    MARKETING = "Marketing"
    QUALITY = "Quality"
    AFTER_SALES = "AfterSales"
    BI = "BI"
    SOPS = "SOPs"
    SETTINGS = "Settings"
    NOTIFICATIONS = "Notifications"
    AGENDA = "Agenda"
    GOALS = "Goals"
    ADMIN = "Admin"
    PIPELINE = "Pipeline"
    METRICS = "Metrics"
    REPORTS = "Reports"

    @property
    def label(self) -> str:
        return MODULE_LABELS[self]

    @classmethod
    def parse(cls, value: str) -> Module | None:
        """Accept the module identifier or its console label; ``None`` if neither."""

        try:
            return cls(value)
        except ValueError:
            return _BY_LABEL.get(value)


class Action(StrEnum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    APPROVE = "approve"


MODULE_LABELS: dict[Module, str] = {
    Module.DASHBOARD: "Dashboard Geral",
    Module.CRM: "CRM & Vendas",
    Module.CLIENTS: "Clientes & Relacionamento",
    Module.PRODUCTION: "Produção",
    Module.PROJECT_MANAGEMENT: "Gestão de Projectos",
    Module.DAM: "Activos Criativos (DAM)",
    Module.INVENTORY: "Inventário & Equipamentos",
    Module.FINANCIAL: "Financeiro",
    Module.HR: "RH & Performance",
    Module.MARKETING: "Marketing & Conteúdo",
    Module.QUALITY: "Qualidade & Aprovação",
    Module.AFTER_SALES: "Pós-venda & Retenção",
    Module.BI: "Relatórios & BI",
    Module.SOPS: "Processos & SOPs",
    Module.SETTINGS: "Configurações & Administração",
    Module.NOTIFICATIONS: "Notificações",
    Module.AGENDA: "Agenda",
    Module.GOALS: "Metas",
    Module.ADMIN: "Administração",
    Module.PIPELINE: "Pipeline",
    Module.METRICS: "Métricas",
    Module.REPORTS: "Relatórios",
}

_BY_LABEL = {label: module for module, label in MODULE_LABELS.items()}
