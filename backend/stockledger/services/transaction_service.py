# backend/stockledger/services/transaction_service.py
"""
Transaction ledger.

Records inventory-affecting events and drives the level engine through one effect
handler per transaction type.

LIFECYCLE:
1. PENDING: created with requires_approval=True
2. APPROVED: approved by a manager, or created with requires_approval=False
3. COMPLETED: effects applied to levels (terminal, immutable)
4. REJECTED: rejected while pending (terminal)
5. CANCELLED: an effect handler failed; the error is appended to notes (terminal)

Creating and processing are separate steps (record_transaction / process_transaction).
create_transaction composes them for auto-approved intents.

A transaction is processed at most once. process_transaction locks the row and
relies on the optimistic version column, so two concurrent processors cannot both
move it out of APPROVED. All level effects of one transaction (both legs of a
TRANSFER) are flushed in one database transaction and committed together with the
COMPLETED status; a failing leg rolls everything back before the row is marked
CANCELLED. Failed transactions are never retried automatically. Write conflicts that
outlast run_with_retry are not processing failures: nothing is applied and the
transaction stays APPROVED.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import (
    AlreadyCompleted,
    InsufficientStock,
    LevelNotFound,
    MustBeApproved,
    NotPending,
    TransactionNotFound,
    ValidationError,
)
from ..models import Transaction
from ..models.transactions import (
    TXN_STATUS_APPROVED,
    TXN_STATUS_CANCELLED,
    TXN_STATUS_COMPLETED,
    TXN_STATUS_PENDING,
    TXN_STATUS_REJECTED,
    TXN_TYPE_ADJUST,
    TXN_TYPE_ASSIGN,
    TXN_TYPE_CONSUME,
    TXN_TYPE_DAMAGE,
    TXN_TYPE_DISPOSE,
    TXN_TYPE_RECEIVE,
    TXN_TYPE_TRANSFER,
    TXN_TYPE_UNASSIGN,
    TXN_TYPES,
)
from ..time_utils import utcnow
from . import inventory_level_service as levels
from . import item_service
from .concurrency import level_locks, lock_for_update, run_atomic, run_with_retry
from .location import LocationKey, to_path

logger = logging.getLogger(__name__)


def validate_locations(
    txn_type: str,
    source: Optional[LocationKey],
    destination: Optional[LocationKey],
    staging_design_id: Optional[str] = None,
) -> None:
    """
    Check which side(s) a transaction type needs.

    RECEIVE/UNASSIGN need a destination; CONSUME/DAMAGE/DISPOSE need a source;
    TRANSFER needs both (and they must differ); ADJUST needs exactly one side, whose
    position gives the sign; ASSIGN needs a source and a staging design.
    """
    if txn_type not in TXN_TYPES:
        raise ValidationError(f"Unknown transaction type: {txn_type}")

    if txn_type in (TXN_TYPE_RECEIVE, TXN_TYPE_UNASSIGN):
        if destination is None:
            raise ValidationError(f"Destination location required for {txn_type.lower()} transaction")
    elif txn_type in (TXN_TYPE_CONSUME, TXN_TYPE_DAMAGE, TXN_TYPE_DISPOSE):
        if source is None:
            raise ValidationError(f"Source location required for {txn_type.lower()} transaction")
    elif txn_type == TXN_TYPE_TRANSFER:
        if source is None or destination is None:
            raise ValidationError("Both source and destination locations required for transfer")
        if source == destination:
            raise ValidationError("Cannot transfer to the same location")
    elif txn_type == TXN_TYPE_ADJUST:
        if (source is None) == (destination is None):
            raise ValidationError("Adjustment requires exactly one of source or destination")
    elif txn_type == TXN_TYPE_ASSIGN:
        if source is None:
            raise ValidationError("Source location required for assign transaction")
        if not staging_design_id:
            raise ValidationError("Staging design required for assign transaction")


def get_transaction(transaction_id: int) -> Transaction:
    tx = db.session.get(Transaction, transaction_id)
    if tx is None:
        raise TransactionNotFound(transaction_id)
    return tx


def record_transaction(
    *,
    txn_type: str,
    item_id: int,
    quantity: int,
    source: Optional[LocationKey] = None,
    destination: Optional[LocationKey] = None,
    requires_approval: bool = False,
    unit_cost_cents: int | None = None,
    reason: str | None = None,
    reason_code: str | None = None,
    notes: str | None = None,
    staging_design_id: str | None = None,
    created_by: str | None = None,
    from_location: str | None = None,
    to_location: str | None = None,
    transaction_date: datetime | None = None,
) -> Transaction:
    """
    Validate and persist a transaction intent without touching any level.

    Status is PENDING when approval is required, APPROVED otherwise.

    Raises:
        ValidationError: bad quantity, cost, type, or missing locations
        ItemNotFound: item does not exist
    """
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be positive")
    if unit_cost_cents is not None and unit_cost_cents < 0:
        raise ValidationError("Unit cost cannot be negative")
    validate_locations(txn_type, source, destination, staging_design_id)

    def _op():
        item_service.get_item(item_id)

        tx = Transaction(
            type=txn_type,
            status=TXN_STATUS_PENDING if requires_approval else TXN_STATUS_APPROVED,
            item_id=item_id,
            quantity=quantity,
            from_location=from_location or (to_path(source) if source else None),
            to_location=to_location or (to_path(destination) if destination else None),
            unit_cost_cents=unit_cost_cents,
            total_cost_cents=unit_cost_cents * quantity if unit_cost_cents is not None else None,
            reason=reason,
            reason_code=reason_code,
            notes=notes,
            staging_design_id=staging_design_id,
            created_by=created_by,
            transaction_date=transaction_date or utcnow(),
        )
        tx.source = source
        tx.destination = destination
        db.session.add(tx)
        db.session.commit()
        return tx

    return run_atomic(_op)


def create_transaction(*, requires_approval: bool = False, **fields) -> Transaction:
    """
    Record a transaction and, when it needs no approval, process it right away.

    If processing fails the transaction stays recorded as CANCELLED and the
    handler's error propagates.
    """
    tx = record_transaction(requires_approval=requires_approval, **fields)
    if tx.status == TXN_STATUS_APPROVED:
        return process_transaction(tx.id)
    return tx


def approve_transaction(
    transaction_id: int,
    approved_by: str,
    notes: str | None = None,
    *,
    process: bool = True,
) -> Transaction:
    """
    Approve a pending transaction (manager action), then process it unless
    process=False.
    """
    def _op():
        tx = lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id)).first()
        if tx is None:
            raise TransactionNotFound(transaction_id)
        if tx.status != TXN_STATUS_PENDING:
            raise NotPending(f"Transaction {transaction_id} is not pending approval ({tx.status})")

        tx.status = TXN_STATUS_APPROVED
        tx.approved_by = approved_by
        tx.approved_at = utcnow()
        if notes:
            tx.append_note(f"Approval: {notes}")
        db.session.commit()
        return tx

    tx = run_atomic(_op)
    if process:
        return process_transaction(tx.id)
    return tx


def reject_transaction(transaction_id: int, rejected_by: str, rejection_reason: str) -> Transaction:
    def _op():
        tx = lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id)).first()
        if tx is None:
            raise TransactionNotFound(transaction_id)
        if tx.status != TXN_STATUS_PENDING:
            raise NotPending(f"Transaction {transaction_id} is not pending approval ({tx.status})")

        tx.status = TXN_STATUS_REJECTED
        tx.rejected_by = rejected_by
        tx.rejection_reason = rejection_reason
        db.session.commit()
        return tx

    return run_atomic(_op)


# ---------------------------------------------------------------------------
# Effect handlers: each runs inside process_transaction's database transaction
# and must only flush.
# ---------------------------------------------------------------------------

def _process_receive(tx: Transaction) -> None:
    levels.apply_delta(tx.item_id, tx.destination, tx.quantity)


def _process_consume(tx: Transaction) -> None:
    levels.apply_delta(tx.item_id, tx.source, -tx.quantity)


def _process_transfer(tx: Transaction) -> None:
    levels.apply_delta(tx.item_id, tx.source, -tx.quantity)
    levels.apply_delta(tx.item_id, tx.destination, tx.quantity)


def _process_adjust(tx: Transaction) -> None:
    if tx.destination is not None:
        levels.apply_delta(tx.item_id, tx.destination, tx.quantity)
    else:
        levels.apply_delta(tx.item_id, tx.source, -tx.quantity)


def _process_damage_or_dispose(tx: Transaction) -> None:
    levels.apply_delta(tx.item_id, tx.source, -tx.quantity)
    if tx.type == TXN_TYPE_DAMAGE:
        item_service.set_item_condition(tx.item_id, "DAMAGED")


def _process_assign(tx: Transaction) -> None:
    levels.reserve_at(tx.item_id, tx.source, tx.quantity)


def _process_unassign(tx: Transaction) -> None:
    levels.release_at(tx.item_id, tx.destination, tx.quantity)


EFFECT_HANDLERS: dict[str, Callable[[Transaction], None]] = {
    TXN_TYPE_RECEIVE: _process_receive,
    TXN_TYPE_CONSUME: _process_consume,
    TXN_TYPE_TRANSFER: _process_transfer,
    TXN_TYPE_ADJUST: _process_adjust,
    TXN_TYPE_DAMAGE: _process_damage_or_dispose,
    TXN_TYPE_DISPOSE: _process_damage_or_dispose,
    TXN_TYPE_ASSIGN: _process_assign,
    TXN_TYPE_UNASSIGN: _process_unassign,
}


def _cancel_after_failure(transaction_id: int, error: Exception) -> None:
    """Move an APPROVED transaction to CANCELLED and record why. Own commit."""
    def _op():
        tx = lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id)).first()
        if tx is None or tx.status != TXN_STATUS_APPROVED:
            return
        tx.status = TXN_STATUS_CANCELLED
        tx.append_note(f"Processing failed: {error}")
        db.session.commit()

    run_with_retry(_op)
    logger.warning("Transaction %s cancelled: %s", transaction_id, error)


def process_transaction(transaction_id: int) -> Transaction:
    """
    Apply an APPROVED transaction's effects to inventory levels.

    Raises:
        TransactionNotFound: no such transaction
        AlreadyCompleted: transaction was already processed
        MustBeApproved: transaction is not APPROVED
        InventoryLevelError / LevelNotFound / ValidationError: effect failed; the
            transaction is CANCELLED and no level change is kept
        OperationalError / StaleDataError: conflicts persisted past the retries;
            nothing was applied and the transaction stays APPROVED, so it can
            be processed again
    """
    header = db.session.get(Transaction, transaction_id)
    if header is None:
        raise TransactionNotFound(transaction_id)
    item_id, source, destination = header.item_id, header.source, header.destination

    def _op():
        tx = lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id)).populate_existing().first()
        if tx is None:
            raise TransactionNotFound(transaction_id)
        if tx.status == TXN_STATUS_COMPLETED:
            raise AlreadyCompleted(f"Transaction {transaction_id} already completed")
        if tx.status != TXN_STATUS_APPROVED:
            raise MustBeApproved(
                f"Transaction {transaction_id} must be approved before processing ({tx.status})"
            )

        try:
            EFFECT_HANDLERS[tx.type](tx)
            tx.status = TXN_STATUS_COMPLETED
            tx.completed_at = utcnow()
            db.session.commit()
        except (OperationalError, StaleDataError):
            raise
        except Exception as exc:
            db.session.rollback()
            _cancel_after_failure(transaction_id, exc)
            raise
        return tx

    with level_locks(item_id, source, destination):
        try:
            return run_with_retry(_op)
        except (OperationalError, StaleDataError):
            logger.warning(
                "Transaction %s left APPROVED after repeated write conflicts", transaction_id
            )
            raise


def transfer_inventory(
    *,
    item_id: int,
    quantity: int,
    source: LocationKey,
    destination: LocationKey,
    reason: str | None = None,
    notes: str | None = None,
    created_by: str | None = None,
) -> Transaction:
    """
    Move stock between two locations as one auto-approved TRANSFER.

    Checks source availability first so an obviously impossible transfer fails
    before anything is recorded.

    Raises:
        LevelNotFound: no level for the item at the source
        InsufficientStock: source has less available than requested
    """
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be positive")

    from_level = levels.get_level_by_location(item_id, source)
    if from_level is None:
        raise LevelNotFound(f"Source inventory level not found for item {item_id} at {to_path(source)}")
    if from_level.quantity_available < quantity:
        raise InsufficientStock(
            f"Insufficient inventory at source location {from_level.location_path}. "
            f"Available: {from_level.quantity_available}, requested: {quantity}"
        )

    return create_transaction(
        txn_type=TXN_TYPE_TRANSFER,
        item_id=item_id,
        quantity=quantity,
        source=source,
        destination=destination,
        from_location=from_level.location_name or from_level.location_path,
        to_location=to_path(destination),
        reason=reason or "Inventory transfer",
        notes=notes,
        created_by=created_by,
        requires_approval=False,
    )


def list_transactions(
    *,
    txn_type: str | None = None,
    status: str | None = None,
    item_id: int | None = None,
    property_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")

    q = db.session.query(Transaction)
    if txn_type is not None:
        q = q.filter(Transaction.type == txn_type)
    if status is not None:
        q = q.filter(Transaction.status == status)
    if item_id is not None:
        q = q.filter(Transaction.item_id == item_id)
    if property_id is not None:
        q = q.filter(or_(
            Transaction.from_property_id == property_id,
            Transaction.to_property_id == property_id,
        ))
    if start_date is not None:
        q = q.filter(Transaction.transaction_date >= start_date)
    if end_date is not None:
        q = q.filter(Transaction.transaction_date <= end_date)

    total = q.count()
    rows = (
        q.order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "data": rows,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


def get_item_transaction_history(item_id: int, limit: int = 50) -> list[Transaction]:
    return (
        db.session.query(Transaction)
        .filter_by(item_id=item_id)
        .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        .limit(limit)
        .all()
    )


def get_transaction_statistics(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> dict:
    filters = []
    if start_date is not None:
        filters.append(Transaction.transaction_date >= start_date)
    if end_date is not None:
        filters.append(Transaction.transaction_date <= end_date)

    total = db.session.query(func.count(Transaction.id)).filter(*filters).scalar()
    by_type = (
        db.session.query(Transaction.type, func.count(Transaction.id))
        .filter(*filters)
        .group_by(Transaction.type)
        .order_by(Transaction.type)
        .all()
    )
    by_status = (
        db.session.query(Transaction.status, func.count(Transaction.id))
        .filter(*filters)
        .group_by(Transaction.status)
        .order_by(Transaction.status)
        .all()
    )
    total_value = (
        db.session.query(func.coalesce(func.sum(Transaction.total_cost_cents), 0))
        .filter(*filters)
        .scalar()
    )

    return {
        "total_transactions": int(total or 0),
        "by_type": [{"type": t, "count": int(c)} for t, c in by_type],
        "by_status": [{"status": s, "count": int(c)} for s, c in by_status],
        "total_value_cents": int(total_value or 0),
    }
