# backend/stockledger/services/alert_service.py
"""
Stock alert evaluation.

evaluate() is a pure function of (quantity, reorder_point, max_quantity). The
reorder-point checks run first, so a level can never be reported CRITICAL/LOW and
HIGH/OVERSTOCK at the same time. Alert levels are recomputed from scratch on every
mutation; there is no hysteresis.

check_and_create_alert() keeps at most one unresolved StockAlert per
(item, level) while the level stays LOW or CRITICAL.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app, has_app_context

from ..extensions import db
from ..errors import NotFoundError
from ..models import InventoryLevel, StockAlert
from ..time_utils import utcnow

logger = logging.getLogger(__name__)

ALERT_NORMAL = "NORMAL"
ALERT_LOW = "LOW"
ALERT_CRITICAL = "CRITICAL"
ALERT_HIGH = "HIGH"
ALERT_OVERSTOCK = "OVERSTOCK"

ALERT_LEVELS = (ALERT_NORMAL, ALERT_LOW, ALERT_CRITICAL, ALERT_HIGH, ALERT_OVERSTOCK)
LOW_STOCK_LEVELS = (ALERT_CRITICAL, ALERT_LOW)


@dataclass(frozen=True)
class AlertThresholds:
    critical: float = 0.10
    low: float = 0.50
    high: float = 1.50
    overstock: float = 2.00

    @classmethod
    def from_config(cls, config) -> "AlertThresholds":
        return cls(
            critical=config.get("STOCK_ALERT_CRITICAL_THRESHOLD", cls.critical),
            low=config.get("STOCK_ALERT_LOW_THRESHOLD", cls.low),
            high=config.get("STOCK_ALERT_HIGH_THRESHOLD", cls.high),
            overstock=config.get("STOCK_ALERT_OVERSTOCK_THRESHOLD", cls.overstock),
        )


DEFAULT_THRESHOLDS = AlertThresholds()


def configured_thresholds() -> AlertThresholds:
    if has_app_context():
        return AlertThresholds.from_config(current_app.config)
    return DEFAULT_THRESHOLDS


def evaluate(
    quantity: int,
    reorder_point: Optional[int],
    max_quantity: Optional[int],
    thresholds: AlertThresholds = DEFAULT_THRESHOLDS,
) -> str:
    if not reorder_point:
        return ALERT_NORMAL

    if quantity <= reorder_point * thresholds.critical:
        return ALERT_CRITICAL

    if quantity <= reorder_point * thresholds.low:
        return ALERT_LOW

    if max_quantity and quantity >= max_quantity * thresholds.overstock:
        return ALERT_OVERSTOCK

    if max_quantity and quantity >= max_quantity * thresholds.high:
        return ALERT_HIGH

    return ALERT_NORMAL


def check_and_create_alert(level: InventoryLevel) -> Optional[StockAlert]:
    """
    Ensure an open alert exists when the level is LOW or CRITICAL.

    Returns the newly created alert, or None if the level is healthy or an open
    alert already exists. Does not commit.
    """
    if level.alert_level not in LOW_STOCK_LEVELS:
        return None

    existing = db.session.query(StockAlert).filter_by(
        item_id=level.item_id,
        level_id=level.id,
        is_resolved=False,
    ).first()
    if existing is not None:
        return None

    location = level.location_name or level.location_path
    alert = StockAlert(
        item_id=level.item_id,
        level_id=level.id,
        alert_type=level.alert_level,
        severity="critical" if level.alert_level == ALERT_CRITICAL else "high",
        message=f"{level.item.name} is {level.alert_level.lower()} at {location}",
        current_quantity=level.quantity_on_hand,
        reorder_point=level.effective_reorder_point,
    )
    db.session.add(alert)
    db.session.flush()
    logger.info(
        "Stock alert %s opened for item %s at %s (on hand %s)",
        alert.alert_type, level.item_id, level.location_path, level.quantity_on_hand,
    )
    return alert


def list_open_alerts(item_id: int | None = None) -> list[StockAlert]:
    q = db.session.query(StockAlert).filter_by(is_resolved=False)
    if item_id is not None:
        q = q.filter_by(item_id=item_id)
    return q.order_by(StockAlert.created_at.desc(), StockAlert.id.desc()).all()


def resolve_alert(alert_id: int, resolved_by: str | None = None) -> StockAlert:
    alert = db.session.get(StockAlert, alert_id)
    if alert is None:
        raise NotFoundError(f"Alert {alert_id} not found")
    if not alert.is_resolved:
        alert.is_resolved = True
        alert.resolved_at = utcnow()
        alert.resolved_by = resolved_by
        db.session.commit()
    return alert


def get_low_stock_alerts(property_id: str | None = None) -> list[dict]:
    """LOW/CRITICAL levels with the item fields a reorder screen needs."""
    q = db.session.query(InventoryLevel).filter(InventoryLevel.alert_level.in_(LOW_STOCK_LEVELS))
    if property_id is not None:
        q = q.filter(InventoryLevel.property_id == property_id)

    return [
        {
            "item_id": level.item.id,
            "item_name": level.item.name,
            "sku": level.item.sku,
            "level_id": level.id,
            "property_id": level.property_id,
            "location_name": level.location_name,
            "location_path": level.location_path,
            "current_quantity": level.quantity_on_hand,
            "reorder_point": level.effective_reorder_point,
            "alert_level": level.alert_level,
            "recommended_order": level.item.reorder_quantity,
        }
        for level in q.order_by(InventoryLevel.alert_level.asc(), InventoryLevel.id.asc()).all()
    ]
