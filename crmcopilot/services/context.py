from __future__ import annotations

import asyncio
import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Sequence

from crmcopilot.core.config import Settings, get_settings
from crmcopilot.domain.ai import ContextDigest, ContextSection
from crmcopilot.domain.crm import STAGE_LABELS, CrmStore, CustomerRecord, DealRecord, TaskRecord


logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n（資料已截斷）"
SECTION_SEPARATOR = "\n\n"

CATEGORY_CUSTOMERS = "customers"
CATEGORY_DEALS = "deals"
CATEGORY_TASKS = "tasks"
CATEGORY_CLOSING_THIS_MONTH = "closing_this_month"
CATEGORY_INACTIVE_CUSTOMERS = "inactive_customers"
CATEGORY_SUMMARY = "summary"


@dataclass(frozen=True)
class FetchScope:
    tenant_id: str
    owner_id: str | None
    now: datetime
    inactive_days: int


Fetch = Callable[[CrmStore, FetchScope], Awaitable[Sequence[Any]]]
Format = Callable[[Sequence[Any], FetchScope], str]


@dataclass(frozen=True)
class ContextRule:
    category: str
    keywords: tuple[str, ...]
    fetch: Fetch
    format: Format

    def matches(self, lowered_query: str) -> bool:
        return any(keyword in lowered_query for keyword in self.keywords)


def _format_date(value: date | datetime | None) -> str:
    if value is None:
        return ""
    return f"{value.year}/{value.month}/{value.day}"


def _format_amount(value: float | None) -> str:
    if value is None:
        return "0"
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def _deal_line(deal: DealRecord) -> str:
    stage = STAGE_LABELS.get(deal.stage, deal.stage)
    return (
        f"- **{deal.title}**（{deal.customer_name or '未知'}）: {deal.currency} {_format_amount(deal.value)}"
        f"，階段：{stage}，機率：{deal.probability or 0}%"
    )


def _format_customers(records: Sequence[CustomerRecord], _scope: FetchScope) -> str:
    lines = []
    for customer in records:
        company = f"（{customer.company}）" if customer.company else ""
        email = f" - {customer.email}" if customer.email else ""
        lines.append(f"- **{customer.name}**{company} - 狀態：{customer.status}{email}")
    return f"## 客戶列表（最近 {len(records)} 筆）\n" + "\n".join(lines)


def _format_deals(records: Sequence[DealRecord], _scope: FetchScope) -> str:
    return f"## 商機列表（最近 {len(records)} 筆）\n" + "\n".join(_deal_line(d) for d in records)


def _format_tasks(records: Sequence[TaskRecord], scope: FetchScope) -> str:
    lines = []
    for task in records:
        due = f" 到期：{_format_date(task.due_date)}" if task.due_date else ""
        overdue = " ⚠️ 逾期" if task.due_date is not None and task.due_date < scope.now else ""
        customer = f" - {task.customer_name}" if task.customer_name else ""
        lines.append(f"- **{task.title}**（{task.priority}）{due}{overdue}{customer}")
    return f"## 待辦任務（{len(records)} 筆）\n" + "\n".join(lines)


def _format_closing(records: Sequence[DealRecord], _scope: FetchScope) -> str:
    return "## 本月到期商機\n" + "\n".join(_deal_line(d) for d in records)


def _format_inactive(records: Sequence[CustomerRecord], scope: FetchScope) -> str:
    lines = [
        f"- **{c.name}**（{c.company or ''}）- 最後更新：{_format_date(c.updated_at)}" for c in records
    ]
    return f"## 超過 {scope.inactive_days} 天未互動的客戶\n" + "\n".join(lines)


def _month_bounds(now: datetime) -> tuple[date, date]:
    last_day = calendar.monthrange(now.year, now.month)[1]
    return date(now.year, now.month, 1), date(now.year, now.month, last_day)


async def _fetch_customers(store: CrmStore, scope: FetchScope) -> Sequence[CustomerRecord]:
    return await store.recent_customers(scope.tenant_id, owner_id=scope.owner_id, limit=10)


async def _fetch_deals(store: CrmStore, scope: FetchScope) -> Sequence[DealRecord]:
    # Capped at 15; the store lists open deals before closed ones so the cap keeps the live pipeline.
    return await store.recent_deals(scope.tenant_id, owner_id=scope.owner_id, limit=15)


async def _fetch_tasks(store: CrmStore, scope: FetchScope) -> Sequence[TaskRecord]:
    return await store.open_tasks(scope.tenant_id, owner_id=scope.owner_id, limit=10)


async def _fetch_closing(store: CrmStore, scope: FetchScope) -> Sequence[DealRecord]:
    start, end = _month_bounds(scope.now)
    return await store.deals_closing_between(scope.tenant_id, start, end, owner_id=scope.owner_id)


async def _fetch_inactive(store: CrmStore, scope: FetchScope) -> Sequence[CustomerRecord]:
    cutoff = scope.now - timedelta(days=scope.inactive_days)
    return await store.inactive_customers(scope.tenant_id, cutoff, owner_id=scope.owner_id, limit=10)


# Evaluation and output order; match order in the query never changes it.
CONTEXT_RULES: tuple[ContextRule, ...] = (
    ContextRule(
        CATEGORY_CUSTOMERS,
        ("客戶", "customer", "公司", "company", "聯絡"),
        _fetch_customers,
        _format_customers,
    ),
    ContextRule(
        CATEGORY_DEALS,
        ("商機", "deal", "成交", "管道", "pipeline", "收入", "營收", "金額"),
        _fetch_deals,
        _format_deals,
    ),
    ContextRule(
        CATEGORY_TASKS,
        ("任務", "task", "待辦", "逾期", "提醒", "行事曆"),
        _fetch_tasks,
        _format_tasks,
    ),
    ContextRule(
        CATEGORY_CLOSING_THIS_MONTH,
        ("本月", "這個月", "this month", "到期", "即將"),
        _fetch_closing,
        _format_closing,
    ),
    ContextRule(
        CATEGORY_INACTIVE_CUSTOMERS,
        ("不活躍", "沒互動", "inactive", "閒置", "流失"),
        _fetch_inactive,
        _format_inactive,
    ),
)


def truncate_digest(text: str, max_chars: int) -> tuple[str, bool]:
    if len(text) <= max_chars:
        return text, False
    return text[:max_chars] + TRUNCATION_MARKER, True


class ContextAssembler:
    """Keyword-triggered, tenant-scoped digest of CRM records for chat grounding."""

    def __init__(
        self,
        store: CrmStore,
        *,
        settings: Settings | None = None,
        rules: Sequence[ContextRule] = CONTEXT_RULES,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._rules = tuple(rules)
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    async def _summary_section(self, tenant_id: str) -> ContextSection:
        try:
            counts = await self._store.overview_counts(tenant_id)
        except Exception:  # noqa: BLE001 - the digest must never be empty
            logger.warning("context_summary_failed tenant_id=%s", tenant_id, exc_info=True)
            return ContextSection(CATEGORY_SUMMARY, "## 系統概覽\n- 目前無法取得統計資料")
        text = (
            f"## 系統概覽\n- 客戶數：{counts.customers}\n- 商機數：{counts.deals}\n"
            f"- 待辦任務：{counts.open_tasks}"
        )
        return ContextSection(CATEGORY_SUMMARY, text)

    async def build_context(
        self,
        tenant_id: str,
        user_id: str | None,
        query: str,
        *,
        max_chars: int | None = None,
    ) -> ContextDigest:
        ceiling = max_chars if max_chars is not None else self._settings.context_max_chars
        lowered = query.lower()
        scope = FetchScope(
            tenant_id=tenant_id,
            owner_id=user_id if self._settings.context_scope_to_owner else None,
            now=self._now_provider(),
            inactive_days=self._settings.context_inactive_days,
        )
        matched = [rule for rule in self._rules if rule.matches(lowered)]
        results = await asyncio.gather(
            *(rule.fetch(self._store, scope) for rule in matched),
            return_exceptions=True,
        )

        sections: list[ContextSection] = []
        for rule, result in zip(matched, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                # A failed fetch only drops its own section.
                logger.warning(
                    "context_fetch_failed tenant_id=%s category=%s error=%s",
                    tenant_id,
                    rule.category,
                    type(result).__name__,
                )
                continue
            if not result:
                continue
            sections.append(ContextSection(rule.category, rule.format(result, scope)))

        if not sections:
            sections.append(await self._summary_section(tenant_id))

        combined = SECTION_SEPARATOR.join(section.text for section in sections)
        text, truncated = truncate_digest(combined, ceiling)
        logger.debug(
            "context_built tenant_id=%s categories=%s chars=%s truncated=%s",
            tenant_id,
            ",".join(section.category for section in sections),
            len(text),
            truncated,
        )
        return ContextDigest(sections=tuple(sections), text=text, max_chars=ceiling, truncated=truncated)
