# Overview: Minimal catalog operations the inventory core depends on.

from __future__ import annotations

from ..extensions import db
from ..errors import ConflictError, ItemNotFound, ValidationError
from ..models import InventoryItem

ITEM_CONDITIONS = ("NEW", "EXCELLENT", "GOOD", "FAIR", "POOR", "DAMAGED")


def _normalize_code(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().upper()
    return value or None


def get_item(item_id: int) -> InventoryItem:
    item = db.session.get(InventoryItem, item_id)
    if item is None:
        raise ItemNotFound(item_id)
    return item


def create_item(
    *,
    sku: str,
    name: str,
    barcode: str | None = None,
    category: str = "CONSUMABLE",
    reorder_point: int = 0,
    reorder_quantity: int = 0,
    max_quantity: int | None = None,
    purchase_cost_cents: int | None = None,
    current_value_cents: int | None = None,
    depreciation_rate_bps: int | None = None,
    useful_life_months: int | None = None,
    condition: str = "NEW",
    is_active: bool = True,
) -> InventoryItem:
    """
    Create a catalog item.

    SKU and barcode are normalized to uppercase and must be unique across the
    catalog; duplicates raise ConflictError before anything is written.
    """
    sku = _normalize_code(sku)
    barcode = _normalize_code(barcode)
    if not sku:
        raise ValidationError("sku is required")
    if not name or not name.strip():
        raise ValidationError("name is required")
    if reorder_point < 0 or reorder_quantity < 0:
        raise ValidationError("reorder defaults cannot be negative")
    if max_quantity is not None and max_quantity < 0:
        raise ValidationError("max_quantity cannot be negative")
    if condition not in ITEM_CONDITIONS:
        raise ValidationError(f"Invalid condition: {condition}")

    if db.session.query(InventoryItem.id).filter_by(sku=sku).first():
        raise ConflictError(f"SKU {sku} already exists")
    if barcode and db.session.query(InventoryItem.id).filter_by(barcode=barcode).first():
        raise ConflictError(f"Barcode {barcode} already exists")

    item = InventoryItem(
        sku=sku,
        barcode=barcode,
        name=name.strip(),
        category=category.upper(),
        reorder_point=reorder_point,
        reorder_quantity=reorder_quantity,
        max_quantity=max_quantity,
        purchase_cost_cents=purchase_cost_cents,
        current_value_cents=current_value_cents if current_value_cents is not None else purchase_cost_cents,
        depreciation_rate_bps=depreciation_rate_bps,
        useful_life_months=useful_life_months,
        condition=condition,
        is_active=is_active,
    )
    db.session.add(item)
    db.session.commit()
    return item


def set_item_condition(item_id: int, condition: str) -> InventoryItem:
    """Set the item's condition. Does not commit; the caller owns the transaction."""
    if condition not in ITEM_CONDITIONS:
        raise ValidationError(f"Invalid condition: {condition}")
    item = get_item(item_id)
    item.condition = condition
    db.session.flush()
    return item
