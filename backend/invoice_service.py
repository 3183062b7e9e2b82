from __future__ import annotations

from datetime import date
from decimal import Decimal
import logging
from typing import Iterable, Optional

from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.engine import Connection, RowMapping

from backend.currency_conversion import CurrencyNormalizer, normalize_currency
from backend.database import (
    INVOICE_STATUSES,
    invoice_categories,
    invoice_companies,
    invoice_items,
    invoice_receivers,
    invoice_tag_mappings,
    invoice_tags,
    invoices,
)
from backend.errors import NotFoundError, ValidationError
from backend.line_items import (
    DEFAULT_TARGET_CURRENCY,
    OverrideTarget,
    RecalculateTarget,
    StoredAmounts,
    TargetIntent,
    compute_item_amounts,
)

logger = logging.getLogger(__name__)

INVOICE_COLUMNS = (
    invoices.c.id,
    invoices.c.user_id,
    invoices.c.title,
    invoices.c.description,
    invoices.c.amount,
    invoices.c.currency,
    invoices.c.status,
    invoices.c.due_date,
    invoices.c.category_id,
    invoices.c.company_id,
    invoices.c.receiver_id,
    invoices.c.created_at,
    invoices.c.updated_at,
)

ITEM_COLUMNS = (
    invoice_items.c.id,
    invoice_items.c.invoice_id,
    invoice_items.c.description,
    invoice_items.c.quantity,
    invoice_items.c.unit_price,
    invoice_items.c.amount,
    invoice_items.c.target_currency,
    invoice_items.c.target_amount,
    invoice_items.c.fx_rate_used,
)


def normalize_status(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in INVOICE_STATUSES:
        raise ValidationError("Status must be one of: unpaid, paid, overdue.")
    return normalized


def get_invoice(conn: Connection, user_id: int, invoice_id: int) -> RowMapping:
    row = conn.execute(
        select(*INVOICE_COLUMNS).where(
            invoices.c.id == invoice_id,
            invoices.c.user_id == user_id,
            invoices.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not row:
        raise NotFoundError("Invoice not found.")
    return row


def list_items(conn: Connection, invoice_id: int) -> list[RowMapping]:
    return conn.execute(
        select(*ITEM_COLUMNS)
        .where(invoice_items.c.invoice_id == invoice_id)
        .order_by(invoice_items.c.id.asc())
    ).mappings().all()


def list_tag_ids(conn: Connection, invoice_id: int) -> list[int]:
    return list(
        conn.execute(
            select(invoice_tag_mappings.c.tag_id)
            .where(invoice_tag_mappings.c.invoice_id == invoice_id)
            .order_by(invoice_tag_mappings.c.tag_id.asc())
        ).scalars()
    )


def get_item(conn: Connection, user_id: int, invoice_id: int, item_id: int) -> RowMapping:
    get_invoice(conn, user_id, invoice_id)
    row = conn.execute(
        select(*ITEM_COLUMNS).where(
            invoice_items.c.id == item_id,
            invoice_items.c.invoice_id == invoice_id,
        )
    ).mappings().first()
    if not row:
        raise NotFoundError("Invoice item not found.")
    return row


def ensure_owned(conn: Connection, table: Table, user_id: int, record_id: Optional[int], label: str) -> None:
    if record_id is None:
        return
    criteria = [table.c.id == record_id, table.c.user_id == user_id]
    if "deleted_at" in table.c:
        criteria.append(table.c.deleted_at.is_(None))
    if not conn.execute(select(table.c.id).where(*criteria)).first():
        raise NotFoundError(f"{label} not found.")


def ensure_references(
    conn: Connection,
    user_id: int,
    category_id: Optional[int],
    company_id: Optional[int],
    receiver_id: Optional[int],
) -> None:
    ensure_owned(conn, invoice_categories, user_id, category_id, "Category")
    ensure_owned(conn, invoice_companies, user_id, company_id, "Company")
    ensure_owned(conn, invoice_receivers, user_id, receiver_id, "Receiver")


def refresh_invoice_amount(conn: Connection, invoice_id: int) -> Decimal:
    """Re-sum the display total from the native item amounts."""
    total = conn.execute(
        select(func.coalesce(func.sum(invoice_items.c.amount), 0)).where(
            invoice_items.c.invoice_id == invoice_id
        )
    ).scalar_one()
    total = total if isinstance(total, Decimal) else Decimal(str(total))
    conn.execute(
        update(invoices)
        .where(invoices.c.id == invoice_id)
        .values(amount=total, updated_at=func.now())
    )
    return total


def create_invoice(
    conn: Connection,
    normalizer: CurrencyNormalizer,
    user_id: int,
    *,
    title: str,
    description: Optional[str] = None,
    currency: str = "USD",
    status: str = "unpaid",
    due_date: Optional[date] = None,
    category_id: Optional[int] = None,
    company_id: Optional[int] = None,
    receiver_id: Optional[int] = None,
    items: Iterable[dict] = (),
    tag_ids: Iterable[int] = (),
    target_currency: str = DEFAULT_TARGET_CURRENCY,
) -> int:
    if not title.strip():
        raise ValidationError("Invoice title required.")
    resolved_currency = normalize_currency(currency)
    resolved_status = normalize_status(status)
    ensure_references(conn, user_id, category_id, company_id, receiver_id)

    invoice_id = conn.execute(
        insert(invoices)
        .values(
            user_id=user_id,
            title=title.strip(),
            description=description,
            currency=resolved_currency,
            status=resolved_status,
            due_date=due_date,
            category_id=category_id,
            company_id=company_id,
            receiver_id=receiver_id,
        )
        .returning(invoices.c.id)
    ).scalar_one()

    for item in items:
        _insert_item(
            conn,
            normalizer,
            invoice_id,
            resolved_currency,
            description=item["description"],
            quantity=item.get("quantity"),
            unit_price=item.get("unit_price"),
            target_amount=item.get("target_amount"),
            target_currency=target_currency,
        )
    refresh_invoice_amount(conn, invoice_id)
    tag_ids = list(tag_ids)
    if tag_ids:
        set_invoice_tags(conn, user_id, invoice_id, tag_ids)
    return invoice_id


def update_invoice(
    conn: Connection,
    normalizer: CurrencyNormalizer,
    user_id: int,
    invoice_id: int,
    changes: dict,
    target_currency: str = DEFAULT_TARGET_CURRENCY,
) -> None:
    """Apply field ``changes`` to an invoice.

    A currency change renormalizes every item on the invoice in the same
    transaction so reporting totals never mix source currencies.
    """
    existing = get_invoice(conn, user_id, invoice_id)
    values = dict(changes)
    if "title" in values:
        if not values["title"] or not values["title"].strip():
            raise ValidationError("Invoice title required.")
        values["title"] = values["title"].strip()
    if "status" in values:
        values["status"] = normalize_status(values["status"])
    if "currency" in values:
        values["currency"] = normalize_currency(values["currency"])
    ensure_references(
        conn,
        user_id,
        values.get("category_id"),
        values.get("company_id"),
        values.get("receiver_id"),
    )
    if not values:
        return

    conn.execute(
        update(invoices)
        .where(invoices.c.id == invoice_id, invoices.c.user_id == user_id)
        .values(**values, updated_at=func.now())
    )
    if "currency" in values and values["currency"] != existing["currency"]:
        recalculate_invoice_items(conn, normalizer, invoice_id, values["currency"], target_currency)


def recalculate_invoice_items(
    conn: Connection,
    normalizer: CurrencyNormalizer,
    invoice_id: int,
    currency: str,
    target_currency: str = DEFAULT_TARGET_CURRENCY,
) -> int:
    rows = list_items(conn, invoice_id)
    for row in rows:
        amounts = compute_item_amounts(
            row["quantity"],
            row["unit_price"],
            currency,
            normalizer,
            target_currency=target_currency,
            intent=RecalculateTarget(),
        )
        conn.execute(
            update(invoice_items)
            .where(invoice_items.c.id == row["id"])
            .values(
                amount=amounts.amount,
                target_currency=amounts.target_currency,
                target_amount=amounts.target_amount,
                fx_rate_used=amounts.fx_rate_used,
                updated_at=func.now(),
            )
        )
    refresh_invoice_amount(conn, invoice_id)
    logger.info("Recalculated %d item(s) on invoice %s for currency %s", len(rows), invoice_id, currency)
    return len(rows)


def delete_invoice(conn: Connection, user_id: int, invoice_id: int) -> None:
    get_invoice(conn, user_id, invoice_id)
    conn.execute(delete(invoice_tag_mappings).where(invoice_tag_mappings.c.invoice_id == invoice_id))
    conn.execute(delete(invoice_items).where(invoice_items.c.invoice_id == invoice_id))
    conn.execute(
        update(invoices)
        .where(invoices.c.id == invoice_id, invoices.c.user_id == user_id)
        .values(deleted_at=func.now())
    )


def update_invoice_status(conn: Connection, user_id: int, invoice_id: int, status: str) -> None:
    resolved_status = normalize_status(status)
    result = conn.execute(
        update(invoices)
        .where(
            invoices.c.id == invoice_id,
            invoices.c.user_id == user_id,
            invoices.c.deleted_at.is_(None),
        )
        .values(status=resolved_status, updated_at=func.now())
    )
    if result.rowcount == 0:
        raise NotFoundError("Invoice not found.")


def set_invoice_tags(conn: Connection, user_id: int, invoice_id: int, tag_ids: Iterable[int]) -> list[int]:
    get_invoice(conn, user_id, invoice_id)
    unique_ids = sorted(set(tag_ids))
    if unique_ids:
        owned = set(
            conn.execute(
                select(invoice_tags.c.id).where(
                    invoice_tags.c.id.in_(unique_ids),
                    invoice_tags.c.user_id == user_id,
                )
            ).scalars()
        )
        missing = [tag_id for tag_id in unique_ids if tag_id not in owned]
        if missing:
            raise NotFoundError(f"Tag {missing[0]} not found.")
    conn.execute(delete(invoice_tag_mappings).where(invoice_tag_mappings.c.invoice_id == invoice_id))
    if unique_ids:
        conn.execute(
            insert(invoice_tag_mappings),
            [{"invoice_id": invoice_id, "tag_id": tag_id} for tag_id in unique_ids],
        )
    return unique_ids


def add_item(
    conn: Connection,
    normalizer: CurrencyNormalizer,
    user_id: int,
    invoice_id: int,
    *,
    description: str,
    quantity: Decimal | None = None,
    unit_price: Decimal | None = None,
    target_amount: Decimal | None = None,
    target_currency: str = DEFAULT_TARGET_CURRENCY,
) -> RowMapping:
    invoice = get_invoice(conn, user_id, invoice_id)
    item_id = _insert_item(
        conn,
        normalizer,
        invoice_id,
        invoice["currency"],
        description=description,
        quantity=quantity,
        unit_price=unit_price,
        target_amount=target_amount,
        target_currency=target_currency,
    )
    refresh_invoice_amount(conn, invoice_id)
    return get_item(conn, user_id, invoice_id, item_id)


def update_item(
    conn: Connection,
    normalizer: CurrencyNormalizer,
    user_id: int,
    invoice_id: int,
    item_id: int,
    *,
    intent: TargetIntent,
    description: str | None = None,
    quantity: Decimal | None = None,
    unit_price: Decimal | None = None,
) -> RowMapping:
    invoice = get_invoice(conn, user_id, invoice_id)
    existing = get_item(conn, user_id, invoice_id, item_id)
    if description is not None and not description.strip():
        raise ValidationError("Item description required.")

    previous = StoredAmounts(
        amount=existing["amount"],
        currency=invoice["currency"],
        target_currency=existing["target_currency"],
        target_amount=existing["target_amount"],
        fx_rate_used=existing["fx_rate_used"],
    )
    amounts = compute_item_amounts(
        quantity if quantity is not None else existing["quantity"],
        unit_price if unit_price is not None else existing["unit_price"],
        invoice["currency"],
        normalizer,
        target_currency=existing["target_currency"],
        intent=intent,
        previous=previous,
    )
    conn.execute(
        update(invoice_items)
        .where(invoice_items.c.id == item_id, invoice_items.c.invoice_id == invoice_id)
        .values(
            description=description.strip() if description is not None else existing["description"],
            quantity=amounts.quantity,
            unit_price=amounts.unit_price,
            amount=amounts.amount,
            target_currency=amounts.target_currency,
            target_amount=amounts.target_amount,
            fx_rate_used=amounts.fx_rate_used,
            updated_at=func.now(),
        )
    )
    refresh_invoice_amount(conn, invoice_id)
    return get_item(conn, user_id, invoice_id, item_id)


def delete_item(conn: Connection, user_id: int, invoice_id: int, item_id: int) -> None:
    get_item(conn, user_id, invoice_id, item_id)
    conn.execute(
        delete(invoice_items).where(
            invoice_items.c.id == item_id,
            invoice_items.c.invoice_id == invoice_id,
        )
    )
    refresh_invoice_amount(conn, invoice_id)


def _insert_item(
    conn: Connection,
    normalizer: CurrencyNormalizer,
    invoice_id: int,
    currency: str,
    *,
    description: str,
    quantity: Decimal | None,
    unit_price: Decimal | None,
    target_amount: Decimal | None,
    target_currency: str,
) -> int:
    if not description or not description.strip():
        raise ValidationError("Item description required.")
    intent = OverrideTarget(target_amount) if target_amount is not None else RecalculateTarget()
    amounts = compute_item_amounts(
        quantity if quantity is not None else Decimal("1"),
        unit_price if unit_price is not None else Decimal("0"),
        currency,
        normalizer,
        target_currency=target_currency,
        intent=intent,
    )
    return conn.execute(
        insert(invoice_items)
        .values(
            invoice_id=invoice_id,
            description=description.strip(),
            quantity=amounts.quantity,
            unit_price=amounts.unit_price,
            amount=amounts.amount,
            target_currency=amounts.target_currency,
            target_amount=amounts.target_amount,
            fx_rate_used=amounts.fx_rate_used,
        )
        .returning(invoice_items.c.id)
    ).scalar_one()
