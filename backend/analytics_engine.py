"""
Invoice analytics over a rolling time window.

Every figure is computed in the database from the persisted, already
normalized ``invoice_items.target_amount`` values; nothing is converted at
query time. An invoice is in the window when its due date (or, without one,
its creation date) falls inside ``[start_date, end_date]``.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Table, case, exists, func, null, select
from sqlalchemy.engine import Connection
from sqlalchemy.sql import Subquery

from backend.database import (
    invoice_categories,
    invoice_companies,
    invoice_items,
    invoice_receivers,
    invoice_tag_mappings,
    invoice_tags,
    invoices,
)
from backend.errors import ValidationError

ZERO = Decimal("0")
CENT = Decimal("0.01")
UNPAID_GROUP_STATUSES = ("unpaid", "overdue")


class AnalyticsPeriod(str, Enum):
    SEVEN_DAYS = "7d"
    ONE_MONTH = "1m"
    ONE_YEAR = "1y"

    @classmethod
    def parse(cls, value: str) -> "AnalyticsPeriod":
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValidationError("Unsupported period. Use '7d', '1m' or '1y'.") from exc


class GroupDimension(str, Enum):
    CATEGORY = "category"
    COMPANY = "company"
    RECEIVER = "receiver"
    TAG = "tag"

    @classmethod
    def parse(cls, value: str) -> "GroupDimension":
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValidationError("Unsupported dimension.") from exc


@dataclass(frozen=True)
class AnalyticsSummary:
    period: str
    start_date: date
    end_date: date
    total_amount: Decimal
    paid_amount: Decimal
    unpaid_amount: Decimal
    overdue_amount: Decimal
    invoice_count: int
    paid_count: int
    unpaid_count: int
    overdue_count: int


@dataclass(frozen=True)
class GroupItem:
    id: int
    name: str
    total_amount: Decimal
    paid_amount: Decimal
    unpaid_amount: Decimal
    invoice_count: int
    color: Optional[str] = None


@dataclass(frozen=True)
class AnalyticsByGroup:
    period: str
    start_date: date
    end_date: date
    items: list[GroupItem]
    uncategorized: Optional[GroupItem] = None


@dataclass(frozen=True)
class _DimensionQuery:
    table: Table
    # None means the dimension is linked through invoice_tag_mappings.
    foreign_key: Optional[str]
    uncategorized_name: str
    has_color: bool


_DIMENSIONS: dict[GroupDimension, _DimensionQuery] = {
    GroupDimension.CATEGORY: _DimensionQuery(invoice_categories, "category_id", "Uncategorized", True),
    GroupDimension.COMPANY: _DimensionQuery(invoice_companies, "company_id", "No Company", False),
    GroupDimension.RECEIVER: _DimensionQuery(invoice_receivers, "receiver_id", "No Receiver", False),
    GroupDimension.TAG: _DimensionQuery(invoice_tags, None, "No Tag", True),
}

if set(_DIMENSIONS) != set(GroupDimension):
    raise RuntimeError("Every GroupDimension needs a query definition.")


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return date(year, month, day)


def utc_today() -> date:
    """Today on the UTC clock that fills ``created_at``."""
    return datetime.now(timezone.utc).date()


def resolve_period_range(period: AnalyticsPeriod, today: date) -> tuple[date, date]:
    if period is AnalyticsPeriod.SEVEN_DAYS:
        return today - timedelta(days=7), today
    if period is AnalyticsPeriod.ONE_MONTH:
        return shift_month_keep_day(today, -1), today
    if period is AnalyticsPeriod.ONE_YEAR:
        return shift_month_keep_day(today, -12), today
    raise ValidationError(f"Unsupported period: {period}")


def scoped_invoices(user_id: int, start_date: date, end_date: date) -> Subquery:
    """One row per live invoice of ``user_id`` in the window, with its normalized total."""
    item_totals = (
        select(
            invoice_items.c.invoice_id,
            func.sum(invoice_items.c.target_amount).label("normalized_total"),
        )
        .group_by(invoice_items.c.invoice_id)
        .subquery("item_totals")
    )
    relevant_date = func.coalesce(invoices.c.due_date, func.date(invoices.c.created_at))
    return (
        select(
            invoices.c.id.label("invoice_id"),
            invoices.c.status,
            invoices.c.category_id,
            invoices.c.company_id,
            invoices.c.receiver_id,
            func.coalesce(item_totals.c.normalized_total, 0).label("normalized_total"),
        )
        .select_from(invoices.outerjoin(item_totals, item_totals.c.invoice_id == invoices.c.id))
        .where(
            invoices.c.user_id == user_id,
            invoices.c.deleted_at.is_(None),
            relevant_date >= start_date,
            relevant_date <= end_date,
        )
        .subquery("scoped_invoices")
    )


def summary(
    conn: Connection,
    user_id: int,
    period: AnalyticsPeriod,
    today: Optional[date] = None,
) -> AnalyticsSummary:
    start_date, end_date = resolve_period_range(period, today or utc_today())
    scoped = scoped_invoices(user_id, start_date, end_date)
    total = scoped.c.normalized_total

    def amount_for(status: str):
        return func.coalesce(func.sum(case((scoped.c.status == status, total), else_=0)), 0)

    def count_for(status: str):
        return func.coalesce(func.sum(case((scoped.c.status == status, 1), else_=0)), 0)

    row = conn.execute(
        select(
            func.count(scoped.c.invoice_id).label("invoice_count"),
            func.coalesce(func.sum(total), 0).label("total_amount"),
            amount_for("paid").label("paid_amount"),
            amount_for("unpaid").label("unpaid_amount"),
            amount_for("overdue").label("overdue_amount"),
            count_for("paid").label("paid_count"),
            count_for("unpaid").label("unpaid_count"),
            count_for("overdue").label("overdue_count"),
        ).select_from(scoped)
    ).mappings().one()

    return AnalyticsSummary(
        period=period.value,
        start_date=start_date,
        end_date=end_date,
        total_amount=_money(row["total_amount"]),
        paid_amount=_money(row["paid_amount"]),
        unpaid_amount=_money(row["unpaid_amount"]),
        overdue_amount=_money(row["overdue_amount"]),
        invoice_count=int(row["invoice_count"] or 0),
        paid_count=int(row["paid_count"] or 0),
        unpaid_count=int(row["unpaid_count"] or 0),
        overdue_count=int(row["overdue_count"] or 0),
    )


def by_group(
    conn: Connection,
    user_id: int,
    period: AnalyticsPeriod,
    dimension: GroupDimension,
    today: Optional[date] = None,
) -> AnalyticsByGroup:
    """Roll the window up by ``dimension``.

    Category, company and receiver are exclusive: each invoice lands in one
    bucket or in ``uncategorized``. Tags fan out, so an invoice with several
    tags is counted in full under each of them and tag totals can exceed the
    summary total.
    """
    query = _DIMENSIONS[dimension]
    start_date, end_date = resolve_period_range(period, today or utc_today())
    scoped = scoped_invoices(user_id, start_date, end_date)
    table = query.table
    color = table.c.color if query.has_color else null()
    aggregates = _group_aggregates(scoped)

    if query.foreign_key is None:
        joined = scoped.join(
            invoice_tag_mappings, invoice_tag_mappings.c.invoice_id == scoped.c.invoice_id
        ).join(table, table.c.id == invoice_tag_mappings.c.tag_id)
        unassigned = ~exists(
            select(invoice_tag_mappings.c.tag_id).where(
                invoice_tag_mappings.c.invoice_id == scoped.c.invoice_id
            )
        )
    else:
        link = scoped.c[query.foreign_key]
        joined = scoped.join(table, table.c.id == link)
        unassigned = link.is_(None)

    group_columns = [table.c.id, table.c.name]
    if query.has_color:
        group_columns.append(table.c.color)
    rows = conn.execute(
        select(
            table.c.id.label("id"),
            table.c.name.label("name"),
            color.label("color"),
            *aggregates,
        )
        .select_from(joined)
        .group_by(*group_columns)
        .order_by(aggregates[1].desc(), table.c.id.asc())
    ).mappings().all()

    items = [
        GroupItem(
            id=row["id"],
            name=row["name"],
            color=row["color"],
            total_amount=_money(row["total_amount"]),
            paid_amount=_money(row["paid_amount"]),
            unpaid_amount=_money(row["unpaid_amount"]),
            invoice_count=int(row["invoice_count"] or 0),
        )
        for row in rows
    ]

    leftover = conn.execute(select(*aggregates).select_from(scoped).where(unassigned)).mappings().one()
    uncategorized = None
    if _money(leftover["total_amount"]) != ZERO:
        uncategorized = GroupItem(
            id=0,
            name=query.uncategorized_name,
            total_amount=_money(leftover["total_amount"]),
            paid_amount=_money(leftover["paid_amount"]),
            unpaid_amount=_money(leftover["unpaid_amount"]),
            invoice_count=int(leftover["invoice_count"] or 0),
        )

    return AnalyticsByGroup(
        period=period.value,
        start_date=start_date,
        end_date=end_date,
        items=items,
        uncategorized=uncategorized,
    )


def _group_aggregates(scoped: Subquery) -> list:
    total = scoped.c.normalized_total
    return [
        func.count(scoped.c.invoice_id).label("invoice_count"),
        func.coalesce(func.sum(total), 0).label("total_amount"),
        func.coalesce(func.sum(case((scoped.c.status == "paid", total), else_=0)), 0).label("paid_amount"),
        func.coalesce(
            func.sum(case((scoped.c.status.in_(UNPAID_GROUP_STATUSES), total), else_=0)), 0
        ).label("unpaid_amount"),
    ]


def _money(value: Decimal | float | int | str | None) -> Decimal:
    if value is None:
        return ZERO.quantize(CENT)
    coerced = value if isinstance(value, Decimal) else Decimal(str(value))
    return coerced.quantize(CENT, rounding=ROUND_HALF_UP)
