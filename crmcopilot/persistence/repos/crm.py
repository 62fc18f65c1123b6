from __future__ import annotations

from datetime import date, datetime
from typing import Callable, Sequence

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmcopilot.domain.crm import (
    CLOSED_STAGES,
    OPEN_TASK_STATUSES,
    ClosedDealCounts,
    CustomerRecord,
    DealRecord,
    DocumentRecord,
    OverviewCounts,
    PipelineSnapshot,
    TaskCounts,
    TaskRecord,
)
from crmcopilot.domain.models import Customer, Deal, Document, Task


def _customer_record(row: Customer) -> CustomerRecord:
    return CustomerRecord(
        id=row.id,
        name=row.name,
        company=row.company,
        email=row.email,
        status=row.status,
        updated_at=row.updated_at,
    )


def _deal_record(row: Deal) -> DealRecord:
    customer = row.customer
    return DealRecord(
        id=row.id,
        title=row.title,
        stage=row.stage,
        value=float(row.value) if row.value is not None else None,
        currency=row.currency,
        probability=row.probability,
        close_date=row.close_date,
        customer_name=customer.name if customer is not None else None,
        customer_company=customer.company if customer is not None else None,
        updated_at=row.updated_at,
    )


def _task_record(row: Task) -> TaskRecord:
    return TaskRecord(
        id=row.id,
        title=row.title,
        status=row.status,
        priority=row.priority,
        type=row.type,
        due_date=row.due_date,
        customer_name=row.customer.name if row.customer is not None else None,
    )


async def list_recent_customers(
    session: AsyncSession, tenant_id: str, *, owner_id: str | None = None, limit: int = 10
) -> list[CustomerRecord]:
    stmt = select(Customer).where(Customer.tenant_id == tenant_id)
    if owner_id:
        stmt = stmt.where(Customer.owner_id == owner_id)
    stmt = stmt.order_by(Customer.updated_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return [_customer_record(row) for row in result.scalars().all()]


def recent_deals_statement(tenant_id: str, *, owner_id: str | None = None, limit: int = 15) -> Select:
    stmt = select(Deal).where(Deal.tenant_id == tenant_id)
    if owner_id:
        stmt = stmt.where(Deal.owner_id == owner_id)
    # Open deals first (false sorts before true), then most recently touched.
    return stmt.order_by(Deal.stage.in_(CLOSED_STAGES), Deal.updated_at.desc()).limit(limit)


async def list_recent_deals(
    session: AsyncSession, tenant_id: str, *, owner_id: str | None = None, limit: int = 15
) -> list[DealRecord]:
    result = await session.execute(recent_deals_statement(tenant_id, owner_id=owner_id, limit=limit))
    return [_deal_record(row) for row in result.unique().scalars().all()]


async def list_open_tasks(
    session: AsyncSession, tenant_id: str, *, owner_id: str | None = None, limit: int = 10
) -> list[TaskRecord]:
    stmt = select(Task).where(
        Task.tenant_id == tenant_id,
        Task.status.in_(OPEN_TASK_STATUSES),
    )
    if owner_id:
        stmt = stmt.where(Task.assignee_id == owner_id)
    # Undated tasks sort after dated ones so urgent work stays on top.
    stmt = stmt.order_by(Task.due_date.asc().nulls_last()).limit(limit)
    result = await session.execute(stmt)
    return [_task_record(row) for row in result.unique().scalars().all()]


async def list_deals_closing_between(
    session: AsyncSession,
    tenant_id: str,
    start: date,
    end: date,
    *,
    owner_id: str | None = None,
) -> list[DealRecord]:
    stmt = select(Deal).where(
        Deal.tenant_id == tenant_id,
        Deal.close_date >= start,
        Deal.close_date <= end,
        Deal.stage.not_in(CLOSED_STAGES),
    )
    if owner_id:
        stmt = stmt.where(Deal.owner_id == owner_id)
    stmt = stmt.order_by(Deal.close_date.asc())
    result = await session.execute(stmt)
    return [_deal_record(row) for row in result.unique().scalars().all()]


async def list_inactive_customers(
    session: AsyncSession,
    tenant_id: str,
    updated_before: datetime,
    *,
    owner_id: str | None = None,
    limit: int = 10,
) -> list[CustomerRecord]:
    stmt = select(Customer).where(
        Customer.tenant_id == tenant_id,
        Customer.status == "active",
        Customer.updated_at < updated_before,
    )
    if owner_id:
        stmt = stmt.where(Customer.owner_id == owner_id)
    stmt = stmt.order_by(Customer.updated_at.asc()).limit(limit)
    result = await session.execute(stmt)
    return [_customer_record(row) for row in result.scalars().all()]


async def count_overview(session: AsyncSession, tenant_id: str) -> OverviewCounts:
    customers = await session.scalar(
        select(func.count()).select_from(Customer).where(Customer.tenant_id == tenant_id)
    )
    deals = await session.scalar(
        select(func.count()).select_from(Deal).where(Deal.tenant_id == tenant_id)
    )
    open_tasks = await session.scalar(
        select(func.count())
        .select_from(Task)
        .where(Task.tenant_id == tenant_id, Task.status.in_(OPEN_TASK_STATUSES))
    )
    return OverviewCounts(customers=customers or 0, deals=deals or 0, open_tasks=open_tasks or 0)


async def get_customer(session: AsyncSession, tenant_id: str, customer_id: str) -> CustomerRecord | None:
    result = await session.execute(
        select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
    )
    row = result.scalar_one_or_none()
    return _customer_record(row) if row is not None else None


async def get_deal(session: AsyncSession, tenant_id: str, deal_id: str) -> DealRecord | None:
    result = await session.execute(select(Deal).where(Deal.id == deal_id, Deal.tenant_id == tenant_id))
    row = result.unique().scalar_one_or_none()
    return _deal_record(row) if row is not None else None


async def get_pipeline_snapshot(session: AsyncSession, tenant_id: str) -> PipelineSnapshot:
    open_filter = and_(Deal.tenant_id == tenant_id, Deal.stage.not_in(CLOSED_STAGES))
    grouped = await session.execute(
        select(Deal.stage, func.count()).where(open_filter).group_by(Deal.stage)
    )
    total = await session.scalar(select(func.coalesce(func.sum(Deal.value), 0)).where(open_filter))
    return PipelineSnapshot(
        deals_by_stage={stage: int(count) for stage, count in grouped.all()},
        open_value=float(total or 0),
    )


async def list_at_risk_deals(
    session: AsyncSession,
    tenant_id: str,
    *,
    now: datetime,
    stale_before: datetime,
    limit: int = 10,
) -> list[DealRecord]:
    # Overdue close date or no update inside the staleness window.
    stmt = (
        select(Deal)
        .where(
            Deal.tenant_id == tenant_id,
            Deal.stage.not_in(CLOSED_STAGES),
            or_(Deal.close_date < now.date(), Deal.updated_at < stale_before),
        )
        .order_by(Deal.updated_at.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [_deal_record(row) for row in result.unique().scalars().all()]


async def count_closed_deals(session: AsyncSession, tenant_id: str, *, since: datetime) -> ClosedDealCounts:
    grouped = await session.execute(
        select(Deal.stage, func.count())
        .where(
            Deal.tenant_id == tenant_id,
            Deal.stage.in_(CLOSED_STAGES),
            Deal.updated_at >= since,
        )
        .group_by(Deal.stage)
    )
    counts = {stage: int(count) for stage, count in grouped.all()}
    return ClosedDealCounts(won=counts.get("closed_won", 0), lost=counts.get("closed_lost", 0))


async def count_tasks(session: AsyncSession, tenant_id: str, *, now: datetime) -> TaskCounts:
    open_filter = and_(Task.tenant_id == tenant_id, Task.status.in_(OPEN_TASK_STATUSES))
    active = await session.scalar(select(func.count()).select_from(Task).where(open_filter))
    overdue = await session.scalar(
        select(func.count()).select_from(Task).where(open_filter, Task.due_date < now)
    )
    return TaskCounts(active=active or 0, overdue=overdue or 0)


async def get_document(session: AsyncSession, tenant_id: str, document_id: str) -> DocumentRecord | None:
    result = await session.execute(
        select(Document).where(Document.id == document_id, Document.tenant_id == tenant_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return DocumentRecord(
        id=row.id,
        name=row.name,
        customer_id=row.customer_id,
        type=row.type,
        content=row.content,
        extraction_status=row.extraction_status,
    )


async def get_document_names(
    session: AsyncSession, tenant_id: str, document_ids: Sequence[str]
) -> dict[str, str]:
    if not document_ids:
        return {}
    result = await session.execute(
        select(Document.id, Document.name).where(
            Document.tenant_id == tenant_id,
            Document.id.in_(list(document_ids)),
        )
    )
    return {doc_id: name for doc_id, name in result.all()}


async def list_customer_document_ids(session: AsyncSession, tenant_id: str, customer_id: str) -> list[str]:
    result = await session.execute(
        select(Document.id).where(Document.tenant_id == tenant_id, Document.customer_id == customer_id)
    )
    return list(result.scalars().all())


async def list_extracted_document_ids(session: AsyncSession, tenant_id: str) -> list[str]:
    result = await session.execute(
        select(Document.id)
        .where(Document.tenant_id == tenant_id, Document.extraction_status == "completed")
        .order_by(Document.id)
    )
    return list(result.scalars().all())


class SqlCrmStore:
    """CrmStore backed by the relational schema.

    Each call opens its own session so the context assembler can fan out
    fetches concurrently; an AsyncSession must not be shared across tasks.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def recent_customers(self, tenant_id, *, owner_id=None, limit=10):
        async with self._session_factory() as session:
            return await list_recent_customers(session, tenant_id, owner_id=owner_id, limit=limit)

    async def recent_deals(self, tenant_id, *, owner_id=None, limit=15):
        async with self._session_factory() as session:
            return await list_recent_deals(session, tenant_id, owner_id=owner_id, limit=limit)

    async def open_tasks(self, tenant_id, *, owner_id=None, limit=10):
        async with self._session_factory() as session:
            return await list_open_tasks(session, tenant_id, owner_id=owner_id, limit=limit)

    async def deals_closing_between(self, tenant_id, start, end, *, owner_id=None):
        async with self._session_factory() as session:
            return await list_deals_closing_between(session, tenant_id, start, end, owner_id=owner_id)

    async def inactive_customers(self, tenant_id, updated_before, *, owner_id=None, limit=10):
        async with self._session_factory() as session:
            return await list_inactive_customers(
                session, tenant_id, updated_before, owner_id=owner_id, limit=limit
            )

    async def overview_counts(self, tenant_id):
        async with self._session_factory() as session:
            return await count_overview(session, tenant_id)

    async def get_customer(self, tenant_id, customer_id):
        async with self._session_factory() as session:
            return await get_customer(session, tenant_id, customer_id)

    async def get_deal(self, tenant_id, deal_id):
        async with self._session_factory() as session:
            return await get_deal(session, tenant_id, deal_id)

    async def pipeline_snapshot(self, tenant_id):
        async with self._session_factory() as session:
            return await get_pipeline_snapshot(session, tenant_id)

    async def at_risk_deals(self, tenant_id, *, now, stale_before, limit=10):
        async with self._session_factory() as session:
            return await list_at_risk_deals(
                session, tenant_id, now=now, stale_before=stale_before, limit=limit
            )

    async def closed_deal_counts(self, tenant_id, *, since):
        async with self._session_factory() as session:
            return await count_closed_deals(session, tenant_id, since=since)

    async def task_counts(self, tenant_id, *, now):
        async with self._session_factory() as session:
            return await count_tasks(session, tenant_id, now=now)

    async def get_document(self, tenant_id, document_id):
        async with self._session_factory() as session:
            return await get_document(session, tenant_id, document_id)

    async def document_names(self, tenant_id, document_ids):
        async with self._session_factory() as session:
            return await get_document_names(session, tenant_id, document_ids)

    async def customer_document_ids(self, tenant_id, customer_id):
        async with self._session_factory() as session:
            return await list_customer_document_ids(session, tenant_id, customer_id)
