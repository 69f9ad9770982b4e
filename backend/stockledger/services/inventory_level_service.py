# backend/stockledger/services/inventory_level_service.py
"""
Inventory level engine.

Owns on-hand/reserved/available quantities per (item, location).

Invariants (checked here, backed by table check constraints):
- quantity_on_hand >= 0
- 0 <= quantity_reserved <= quantity_on_hand
- quantity_available = quantity_on_hand - quantity_reserved, recomputed together
  with alert_level on every mutation.

Two layers, same as the rest of the service package:
- `_inner` primitives (apply_delta, reserve_at, release_at, get_or_create_level
  with commit=False) mutate and flush only. The ledger calls these inside its own
  database transaction so a multi-leg effect commits or rolls back as one unit.
- Public operations (adjust, reserve, release, cycle_count, update_thresholds)
  take the level lock, run the primitive with retry, write their audit ledger
  entry where one is due, and commit.
"""
from __future__ import annotations

import logging
from typing import Optional

from ..extensions import db
from ..errors import (
    CountBelowReserved,
    InsufficientAvailable,
    InsufficientStock,
    LevelNotFound,
    OverRelease,
    ValidationError,
)
from ..models import InventoryLevel, Transaction
from ..models.transactions import TXN_STATUS_COMPLETED, TXN_TYPE_ADJUST
from ..time_utils import utcnow
from . import alert_service
from .concurrency import level_locks, lock_for_update, run_atomic
from .item_service import get_item
from .location import LocationKey, to_path

logger = logging.getLogger(__name__)


def _location_query(item_id: int, location: LocationKey):
    return db.session.query(InventoryLevel).filter_by(
        item_id=item_id,
        location_key=location.identity(),
    )


def get_level(level_id: int) -> InventoryLevel:
    level = db.session.get(InventoryLevel, level_id)
    if level is None:
        raise LevelNotFound(f"Inventory level {level_id} not found")
    return level


def get_level_by_location(item_id: int, location: LocationKey) -> Optional[InventoryLevel]:
    return _location_query(item_id, location).first()


def _require_level(item_id: int, location: LocationKey) -> InventoryLevel:
    level = lock_for_update(_location_query(item_id, location)).first()
    if level is None:
        raise LevelNotFound(
            f"Inventory level not found for item {item_id} at {to_path(location)}"
        )
    return level


def _recompute(level: InventoryLevel) -> None:
    level.quantity_available = level.quantity_on_hand - level.quantity_reserved
    level.alert_level = alert_service.evaluate(
        level.quantity_on_hand,
        level.effective_reorder_point,
        level.effective_max_quantity,
        alert_service.configured_thresholds(),
    )


def get_or_create_level(
    item_id: int,
    location: LocationKey,
    *,
    location_name: str | None = None,
    commit: bool = True,
) -> InventoryLevel:
    """
    Return the level for (item, location), creating an empty one seeded with the
    item's reorder defaults if none exists.
    """
    level = lock_for_update(_location_query(item_id, location)).first()
    if level is not None:
        return level

    item = get_item(item_id)
    level = InventoryLevel(
        item_id=item.id,
        property_id=location.property_id,
        unit_id=location.unit_id,
        room_id=location.room_id,
        location_key=location.identity(),
        location_name=location_name,
        location_path=to_path(location, location_name),
        quantity_on_hand=0,
        quantity_reserved=0,
        min_quantity=item.reorder_point,
        max_quantity=item.max_quantity,
        reorder_point=item.reorder_point,
    )
    _recompute(level)

    # Another process creating the same level fails the unique constraint here
    db.session.add(level)
    db.session.flush()

    if commit:
        db.session.commit()
    return level


def apply_delta(
    item_id: int,
    location: LocationKey,
    delta: int,
    *,
    location_name: str | None = None,
) -> InventoryLevel:
    """Apply a signed on-hand delta. Flushes, checks alerts, does not commit."""
    level = get_or_create_level(item_id, location, location_name=location_name, commit=False)

    new_on_hand = level.quantity_on_hand + delta
    if new_on_hand < 0:
        raise InsufficientStock(
            f"Insufficient stock for item {item_id} at {level.location_path}. "
            f"On-hand: {level.quantity_on_hand}, change: {delta}"
        )
    if new_on_hand < level.quantity_reserved:
        raise InsufficientAvailable(
            f"Cannot remove reserved stock for item {item_id} at {level.location_path}. "
            f"Available: {level.quantity_available}, change: {delta}"
        )

    level.quantity_on_hand = new_on_hand
    _recompute(level)
    db.session.flush()
    alert_service.check_and_create_alert(level)
    return level


def reserve_at(item_id: int, location: LocationKey, quantity: int) -> InventoryLevel:
    """Earmark available stock. Flushes, does not commit."""
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    level = _require_level(item_id, location)
    if quantity > level.quantity_available:
        raise InsufficientAvailable(
            f"Insufficient available inventory for item {item_id} at {level.location_path}. "
            f"Available: {level.quantity_available}, requested: {quantity}"
        )
    level.quantity_reserved += quantity
    _recompute(level)
    db.session.flush()
    alert_service.check_and_create_alert(level)
    return level


def release_at(item_id: int, location: LocationKey, quantity: int) -> InventoryLevel:
    """Return reserved stock to available. Flushes, does not commit."""
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    level = _require_level(item_id, location)
    if quantity > level.quantity_reserved:
        raise OverRelease(
            f"Cannot release more than reserved quantity for item {item_id} at {level.location_path}. "
            f"Reserved: {level.quantity_reserved}, requested: {quantity}"
        )
    level.quantity_reserved -= quantity
    _recompute(level)
    db.session.flush()
    alert_service.check_and_create_alert(level)
    return level


def _audit_adjustment(
    level: InventoryLevel,
    variance: int,
    *,
    reason: str,
    reason_code: str | None = None,
    notes: str | None = None,
    created_by: str | None = None,
) -> Transaction:
    """Write the COMPLETED ADJUST ledger row that accompanies a direct level change."""
    now = utcnow()
    tx = Transaction(
        type=TXN_TYPE_ADJUST,
        status=TXN_STATUS_COMPLETED,
        item_id=level.item_id,
        quantity=abs(variance),
        reason=reason,
        reason_code=reason_code,
        notes=notes,
        created_by=created_by,
        transaction_date=now,
        completed_at=now,
    )
    if variance > 0:
        tx.destination = level.location
        tx.to_location = level.location_path
    else:
        tx.source = level.location
        tx.from_location = level.location_path
    db.session.add(tx)
    db.session.flush()
    return tx


def adjust(
    item_id: int,
    location: LocationKey,
    delta: int,
    reason: str | None = None,
    *,
    reason_code: str | None = None,
    notes: str | None = None,
    created_by: str | None = None,
    location_name: str | None = None,
) -> InventoryLevel:
    """
    Apply a signed delta to on-hand and record the matching ADJUST transaction.

    The level change and its ledger row commit together or not at all.

    Raises:
        ValidationError: delta is zero
        InsufficientStock: on-hand would go negative
        InsufficientAvailable: on-hand would drop below reserved
    """
    if delta == 0:
        raise ValidationError("Adjustment quantity must be non-zero")

    def _op():
        level = apply_delta(item_id, location, delta, location_name=location_name)
        _audit_adjustment(
            level,
            delta,
            reason=reason or ("Inventory increase" if delta > 0 else "Inventory decrease"),
            reason_code=reason_code,
            notes=notes,
            created_by=created_by,
        )
        db.session.commit()
        return level

    with level_locks(item_id, location):
        return run_atomic(_op)


def reserve(item_id: int, location: LocationKey, quantity: int) -> InventoryLevel:
    def _op():
        level = reserve_at(item_id, location, quantity)
        db.session.commit()
        return level

    with level_locks(item_id, location):
        return run_atomic(_op)


def release(item_id: int, location: LocationKey, quantity: int) -> InventoryLevel:
    def _op():
        level = release_at(item_id, location, quantity)
        db.session.commit()
        return level

    with level_locks(item_id, location):
        return run_atomic(_op)


def cycle_count(
    level_id: int,
    counted_quantity: int,
    counted_by: str,
    notes: str | None = None,
    *,
    release_excess_reservations: bool = False,
) -> tuple[InventoryLevel, int]:
    """
    Overwrite on-hand with a physical count.

    variance = counted - previous on-hand; a non-zero variance writes a
    CYCLE_COUNT ADJUST transaction in the same commit.

    A count below the current reservations is rejected with CountBelowReserved
    unless release_excess_reservations is set, in which case reservations are cut
    down to the counted quantity and the cut is noted on the level.
    """
    if counted_quantity < 0:
        raise ValidationError("Counted quantity cannot be negative")

    target = get_level(level_id)
    item_id, location = target.item_id, target.location

    def _op():
        level = lock_for_update(db.session.query(InventoryLevel).filter_by(id=level_id)).first()
        if level is None:
            raise LevelNotFound(f"Inventory level {level_id} not found")

        released = 0
        if counted_quantity < level.quantity_reserved:
            if not release_excess_reservations:
                raise CountBelowReserved(
                    f"Counted quantity {counted_quantity} is below reserved quantity "
                    f"{level.quantity_reserved} at {level.location_path}"
                )
            released = level.quantity_reserved - counted_quantity
            level.quantity_reserved = counted_quantity

        variance = counted_quantity - level.quantity_on_hand
        level.quantity_on_hand = counted_quantity
        level.last_counted_date = utcnow()
        level.last_counted_by = counted_by

        count_note = notes or ""
        if released:
            count_note = f"{count_note} Released {released} reserved to match count.".strip()
            logger.warning(
                "Cycle count at %s released %s reserved units (level %s)",
                level.location_path, released, level.id,
            )
        if count_note:
            level.notes = f"{level.notes}\n{count_note}" if level.notes else count_note

        _recompute(level)
        db.session.flush()

        if variance != 0:
            _audit_adjustment(
                level,
                variance,
                reason="Cycle count adjustment",
                reason_code="CYCLE_COUNT",
                notes=f"Variance: {variance}. {notes or ''}".strip(),
                created_by=counted_by,
            )
        alert_service.check_and_create_alert(level)
        db.session.commit()
        return level, variance

    with level_locks(item_id, location):
        return run_atomic(_op)


def update_thresholds(
    level_id: int,
    *,
    min_quantity: int | None = None,
    max_quantity: int | None = None,
    reorder_point: int | None = None,
) -> InventoryLevel:
    """Override per-level thresholds and recompute the alert level."""
    for name, value in (("min_quantity", min_quantity), ("max_quantity", max_quantity), ("reorder_point", reorder_point)):
        if value is not None and value < 0:
            raise ValidationError(f"{name} cannot be negative")

    target = get_level(level_id)

    def _op():
        level = lock_for_update(db.session.query(InventoryLevel).filter_by(id=level_id)).first()
        if min_quantity is not None:
            level.min_quantity = min_quantity
        if max_quantity is not None:
            level.max_quantity = max_quantity
        if reorder_point is not None:
            level.reorder_point = reorder_point
        _recompute(level)
        db.session.flush()
        alert_service.check_and_create_alert(level)
        db.session.commit()
        return level

    with level_locks(target.item_id, target.location):
        return run_atomic(_op)


def list_levels(
    *,
    item_id: int | None = None,
    property_id: str | None = None,
    unit_id: str | None = None,
    alert_level: str | None = None,
    low_stock: bool = False,
    page: int = 1,
    limit: int = 20,
) -> dict:
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")

    q = db.session.query(InventoryLevel)
    if item_id is not None:
        q = q.filter(InventoryLevel.item_id == item_id)
    if property_id is not None:
        q = q.filter(InventoryLevel.property_id == property_id)
    if unit_id is not None:
        q = q.filter(InventoryLevel.unit_id == unit_id)
    if low_stock:
        q = q.filter(InventoryLevel.alert_level.in_(alert_service.LOW_STOCK_LEVELS))
    elif alert_level is not None:
        q = q.filter(InventoryLevel.alert_level == alert_level)

    total = q.count()
    levels = (
        q.order_by(InventoryLevel.alert_level.asc(), InventoryLevel.updated_at.desc(), InventoryLevel.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "data": levels,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


def get_levels_by_property(property_id: str) -> list[InventoryLevel]:
    return (
        db.session.query(InventoryLevel)
        .filter_by(property_id=property_id)
        .order_by(InventoryLevel.location_path.asc(), InventoryLevel.id.asc())
        .all()
    )
