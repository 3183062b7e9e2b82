from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError

from backend.database import invoice_receivers, invoices
from backend.errors import NotFoundError, TransactionFailure, ValidationError

logger = logging.getLogger(__name__)

RECEIVER_COLUMNS = (
    invoice_receivers.c.id,
    invoice_receivers.c.user_id,
    invoice_receivers.c.name,
    invoice_receivers.c.other_names,
    invoice_receivers.c.is_organization,
    invoice_receivers.c.created_at,
    invoice_receivers.c.updated_at,
)


@dataclass(frozen=True)
class MergeResult:
    receiver: RowMapping
    merged_count: int
    invoices_updated: int


def get_receiver(conn: Connection, user_id: int, receiver_id: int) -> RowMapping:
    row = conn.execute(
        select(*RECEIVER_COLUMNS).where(
            invoice_receivers.c.id == receiver_id,
            invoice_receivers.c.user_id == user_id,
            invoice_receivers.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not row:
        raise NotFoundError("Receiver not found.")
    return row


def find_receiver_by_name_or_alias(conn: Connection, user_id: int, name: str) -> Optional[RowMapping]:
    """Case-insensitive lookup on the primary name first, then on aliases."""
    normalized = name.strip().lower()
    if not normalized:
        raise ValidationError("Name cannot be empty.")

    live = (
        invoice_receivers.c.user_id == user_id,
        invoice_receivers.c.deleted_at.is_(None),
    )
    row = conn.execute(
        select(*RECEIVER_COLUMNS)
        .where(*live, func.lower(invoice_receivers.c.name) == normalized)
        .order_by(invoice_receivers.c.id.asc())
        .limit(1)
    ).mappings().first()
    if row:
        return row

    # Aliases live in a JSON column, so match them here rather than in SQL.
    candidates = conn.execute(
        select(*RECEIVER_COLUMNS).where(*live).order_by(invoice_receivers.c.id.asc())
    ).mappings().all()
    for candidate in candidates:
        for alias in candidate["other_names"] or []:
            if alias.strip().lower() == normalized:
                return candidate
    return None


def merge_receivers(
    engine: Engine,
    user_id: int,
    target_id: int,
    source_ids: Iterable[int],
) -> MergeResult:
    """Fold ``source_ids`` into ``target_id`` for one user, all or nothing.

    Every invoice of the user that points at a source is repointed to the
    target, then the sources are soft-deleted. Both steps share one
    transaction, so readers see either the pre-merge or the post-merge state
    and an invoice never references a deleted receiver.
    """
    requested = list(source_ids)
    try:
        with engine.begin() as conn:
            result = _merge_in_transaction(conn, user_id, target_id, requested)
    except SQLAlchemyError as exc:
        logger.exception("Receiver merge into %s rolled back", target_id)
        raise TransactionFailure("Receiver merge failed and was rolled back.") from exc

    logger.info(
        "Merged %d receiver(s) into %s for user %s; %d invoice(s) reassigned",
        result.merged_count,
        target_id,
        user_id,
        result.invoices_updated,
    )
    return result


def _merge_in_transaction(
    conn: Connection,
    user_id: int,
    target_id: int,
    source_ids: list[int],
) -> MergeResult:
    if not target_id:
        raise NotFoundError("Target receiver not found.")
    target = conn.execute(
        select(*RECEIVER_COLUMNS).where(
            invoice_receivers.c.id == target_id,
            invoice_receivers.c.user_id == user_id,
            invoice_receivers.c.deleted_at.is_(None),
        )
    ).mappings().first()
    if not target:
        raise NotFoundError("Target receiver not found.")
    if not source_ids:
        raise ValidationError("Source IDs are required.")
    if target_id in source_ids:
        raise ValidationError("A receiver cannot be merged into itself.")

    unique_sources = sorted(set(source_ids))
    found = set(
        conn.execute(
            select(invoice_receivers.c.id).where(
                invoice_receivers.c.id.in_(unique_sources),
                invoice_receivers.c.user_id == user_id,
                invoice_receivers.c.deleted_at.is_(None),
            )
        ).scalars()
    )
    missing = [source_id for source_id in unique_sources if source_id not in found]
    if missing:
        raise NotFoundError(f"Source receiver {missing[0]} not found.")

    invoices_updated = _reassign_invoices(conn, user_id, target_id, unique_sources)
    _soft_delete_sources(conn, user_id, unique_sources)

    return MergeResult(
        receiver=target,
        merged_count=len(source_ids),
        invoices_updated=invoices_updated,
    )


def _reassign_invoices(conn: Connection, user_id: int, target_id: int, source_ids: list[int]) -> int:
    result = conn.execute(
        update(invoices)
        .where(invoices.c.receiver_id.in_(source_ids), invoices.c.user_id == user_id)
        .values(receiver_id=target_id, updated_at=func.now())
    )
    return result.rowcount


def _soft_delete_sources(conn: Connection, user_id: int, source_ids: list[int]) -> None:
    result = conn.execute(
        update(invoice_receivers)
        .where(
            invoice_receivers.c.id.in_(source_ids),
            invoice_receivers.c.user_id == user_id,
            invoice_receivers.c.deleted_at.is_(None),
        )
        .values(deleted_at=func.now())
    )
    if result.rowcount != len(source_ids):
        raise TransactionFailure("Source receivers changed during merge.")
