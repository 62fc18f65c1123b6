from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Protocol, Sequence


# Pipeline stages that still carry open revenue.
CLOSED_STAGES = ("closed_won", "closed_lost")
OPEN_TASK_STATUSES = ("pending", "in_progress")

STAGE_LABELS = {
    "lead": "線索",
    "qualification": "評估",
    "proposal": "提案",
    "negotiation": "議價",
    "closed_won": "成交",
    "closed_lost": "失敗",
}


@dataclass(frozen=True)
class Identity:
    """Caller identity resolved by the session layer; never derived here."""

    tenant_id: str
    user_id: str
    user_name: str | None = None


@dataclass(frozen=True)
class CustomerRecord:
    id: str
    name: str
    company: str | None = None
    email: str | None = None
    status: str = "active"
    updated_at: datetime | None = None


@dataclass(frozen=True)
class DealRecord:
    id: str
    title: str
    stage: str
    value: float | None = None
    currency: str = "TWD"
    probability: int | None = None
    close_date: date | None = None
    customer_name: str | None = None
    customer_company: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TaskRecord:
    id: str
    title: str
    status: str
    priority: str = "medium"
    type: str = "todo"
    due_date: datetime | None = None
    customer_name: str | None = None


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    name: str
    customer_id: str | None = None
    type: str | None = None
    content: str | None = None
    extraction_status: str = "completed"


@dataclass(frozen=True)
class OverviewCounts:
    customers: int
    deals: int
    open_tasks: int


@dataclass(frozen=True)
class ClosedDealCounts:
    won: int
    lost: int


@dataclass(frozen=True)
class TaskCounts:
    active: int
    overdue: int


@dataclass(frozen=True)
class PipelineSnapshot:
    # Open deals only; closed stages are reported through ClosedDealCounts.
    deals_by_stage: dict[str, int] = field(default_factory=dict)
    open_value: float = 0.0


class CrmStore(Protocol):
    """Tenant-scoped read access to business records.

    Every method takes the tenant id first and must never return rows that
    belong to another tenant. Methods that accept ``owner_id`` narrow results
    to records owned by (or assigned to) that user when it is not ``None``.
    """

    async def recent_customers(
        self, tenant_id: str, *, owner_id: str | None = None, limit: int = 10
    ) -> list[CustomerRecord]:
        ...

    # Open deals before closed ones, each group newest first.
    async def recent_deals(
        self, tenant_id: str, *, owner_id: str | None = None, limit: int = 15
    ) -> list[DealRecord]:
        ...

    async def open_tasks(
        self, tenant_id: str, *, owner_id: str | None = None, limit: int = 10
    ) -> list[TaskRecord]:
        ...

    async def deals_closing_between(
        self, tenant_id: str, start: date, end: date, *, owner_id: str | None = None
    ) -> list[DealRecord]:
        ...

    async def inactive_customers(
        self,
        tenant_id: str,
        updated_before: datetime,
        *,
        owner_id: str | None = None,
        limit: int = 10,
    ) -> list[CustomerRecord]:
        ...

    async def overview_counts(self, tenant_id: str) -> OverviewCounts:
        ...

    async def get_customer(self, tenant_id: str, customer_id: str) -> CustomerRecord | None:
        ...

    async def get_deal(self, tenant_id: str, deal_id: str) -> DealRecord | None:
        ...

    async def pipeline_snapshot(self, tenant_id: str) -> PipelineSnapshot:
        ...

    async def at_risk_deals(
        self, tenant_id: str, *, now: datetime, stale_before: datetime, limit: int = 10
    ) -> list[DealRecord]:
        ...

    async def closed_deal_counts(self, tenant_id: str, *, since: datetime) -> ClosedDealCounts:
        ...

    async def task_counts(self, tenant_id: str, *, now: datetime) -> TaskCounts:
        ...

    async def get_document(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        ...

    async def document_names(self, tenant_id: str, document_ids: Sequence[str]) -> dict[str, str]:
        ...

    async def customer_document_ids(self, tenant_id: str, customer_id: str) -> list[str]:
        ...
