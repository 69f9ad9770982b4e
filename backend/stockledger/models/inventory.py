from __future__ import annotations

from ..extensions import db
from ..services.location import LocationKey
from ..time_utils import to_utc_z


class InventoryItem(db.Model):
    """
    Catalog item.

    SKU and barcode are globally unique. Reorder defaults (reorder_point,
    reorder_quantity, max_quantity) seed new InventoryLevel rows and are the
    fallback when a level has no override.

    Money is stored in cents.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.CheckConstraint("reorder_point >= 0", name="ck_items_reorder_point_nonneg"),
        db.CheckConstraint("reorder_quantity >= 0", name="ck_items_reorder_quantity_nonneg"),
        db.Index("ix_items_category_active", "category", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(32), nullable=False, default="CONSUMABLE", index=True)

    purchase_cost_cents = db.Column(db.Integer, nullable=True)
    current_value_cents = db.Column(db.Integer, nullable=True)
    depreciation_rate_bps = db.Column(db.Integer, nullable=True)
    useful_life_months = db.Column(db.Integer, nullable=True)

    reorder_point = db.Column(db.Integer, nullable=False, default=0)
    reorder_quantity = db.Column(db.Integer, nullable=False, default=0)
    max_quantity = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    condition = db.Column(db.String(16), nullable=False, default="NEW")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "category": self.category,
            "purchase_cost_cents": self.purchase_cost_cents,
            "current_value_cents": self.current_value_cents,
            "depreciation_rate_bps": self.depreciation_rate_bps,
            "useful_life_months": self.useful_life_months,
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "max_quantity": self.max_quantity,
            "is_active": self.is_active,
            "condition": self.condition,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryLevel(db.Model):
    """
    Quantity state for one item at one location.

    INVARIANTS (also enforced by check constraints):
    - quantity_on_hand >= 0
    - 0 <= quantity_reserved <= quantity_on_hand
    - quantity_available == quantity_on_hand - quantity_reserved, recomputed on
      every mutation, never written independently.

    location_key is the canonical identity of (property_id, unit_id, room_id);
    location_path is display only. Rows are never deleted.
    """
    __tablename__ = "inventory_levels"
    __table_args__ = (
        db.UniqueConstraint("item_id", "location_key", name="uq_levels_item_location"),
        db.CheckConstraint("quantity_on_hand >= 0", name="ck_levels_on_hand_nonneg"),
        db.CheckConstraint("quantity_reserved >= 0", name="ck_levels_reserved_nonneg"),
        db.CheckConstraint("quantity_reserved <= quantity_on_hand", name="ck_levels_reserved_le_on_hand"),
        db.Index("ix_levels_property_alert", "property_id", "alert_level"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)

    property_id = db.Column(db.String(64), nullable=False, index=True)
    unit_id = db.Column(db.String(64), nullable=True)
    room_id = db.Column(db.String(64), nullable=True)
    location_key = db.Column(db.String(255), nullable=False)
    location_name = db.Column(db.String(255), nullable=True)
    location_path = db.Column(db.String(512), nullable=False)

    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    quantity_reserved = db.Column(db.Integer, nullable=False, default=0)
    quantity_available = db.Column(db.Integer, nullable=False, default=0)

    # Per-level overrides; None falls back to the item defaults
    min_quantity = db.Column(db.Integer, nullable=True)
    max_quantity = db.Column(db.Integer, nullable=True)
    reorder_point = db.Column(db.Integer, nullable=True)

    alert_level = db.Column(db.String(16), nullable=False, default="NORMAL", index=True)

    last_counted_date = db.Column(db.DateTime(timezone=True), nullable=True)
    last_counted_by = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    item = db.relationship("InventoryItem", backref=db.backref("levels", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def location(self) -> LocationKey:
        return LocationKey(self.property_id, self.unit_id, self.room_id)

    @property
    def effective_reorder_point(self) -> int | None:
        if self.reorder_point is not None:
            return self.reorder_point
        return self.item.reorder_point if self.item else None

    @property
    def effective_max_quantity(self) -> int | None:
        if self.max_quantity is not None:
            return self.max_quantity
        return self.item.max_quantity if self.item else None

    def __repr__(self) -> str:
        return (
            f"<InventoryLevel id={self.id} item_id={self.item_id} path={self.location_path!r} "
            f"on_hand={self.quantity_on_hand} reserved={self.quantity_reserved}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "property_id": self.property_id,
            "unit_id": self.unit_id,
            "room_id": self.room_id,
            "location_name": self.location_name,
            "location_path": self.location_path,
            "quantity_on_hand": self.quantity_on_hand,
            "quantity_reserved": self.quantity_reserved,
            "quantity_available": self.quantity_available,
            "min_quantity": self.min_quantity,
            "max_quantity": self.max_quantity,
            "reorder_point": self.reorder_point,
            "alert_level": self.alert_level,
            "last_counted_date": to_utc_z(self.last_counted_date),
            "last_counted_by": self.last_counted_by,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockAlert(db.Model):
    """
    Low/critical stock alert for a level.

    At most one unresolved alert per (item_id, level_id); the partial unique index
    backs the check-before-insert in alert_service.
    """
    __tablename__ = "stock_alerts"
    __table_args__ = (
        db.Index(
            "uq_alerts_open_per_level",
            "item_id",
            "level_id",
            unique=True,
            sqlite_where=db.text("is_resolved = 0"),
            postgresql_where=db.text("is_resolved = false"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)
    level_id = db.Column(db.Integer, db.ForeignKey("inventory_levels.id"), nullable=False, index=True)

    alert_type = db.Column(db.String(16), nullable=False)
    severity = db.Column(db.String(16), nullable=False)
    message = db.Column(db.String(512), nullable=False)
    current_quantity = db.Column(db.Integer, nullable=False)
    reorder_point = db.Column(db.Integer, nullable=True)

    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    level = db.relationship("InventoryLevel", backref=db.backref("alerts", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "level_id": self.level_id,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "message": self.message,
            "current_quantity": self.current_quantity,
            "reorder_point": self.reorder_point,
            "is_resolved": self.is_resolved,
            "resolved_at": to_utc_z(self.resolved_at),
            "resolved_by": self.resolved_by,
            "created_at": to_utc_z(self.created_at),
        }
