from __future__ import annotations

from typing import Optional

from ..extensions import db
from ..services.location import LocationKey
from ..time_utils import to_utc_z

# Transaction type constants
TXN_TYPE_RECEIVE = "RECEIVE"
TXN_TYPE_CONSUME = "CONSUME"
TXN_TYPE_TRANSFER = "TRANSFER"
TXN_TYPE_ADJUST = "ADJUST"
TXN_TYPE_DAMAGE = "DAMAGE"
TXN_TYPE_DISPOSE = "DISPOSE"
TXN_TYPE_ASSIGN = "ASSIGN"
TXN_TYPE_UNASSIGN = "UNASSIGN"

TXN_TYPES = (
    TXN_TYPE_RECEIVE, TXN_TYPE_CONSUME, TXN_TYPE_TRANSFER, TXN_TYPE_ADJUST,
    TXN_TYPE_DAMAGE, TXN_TYPE_DISPOSE, TXN_TYPE_ASSIGN, TXN_TYPE_UNASSIGN,
)

# Transaction status constants
TXN_STATUS_PENDING = "PENDING"
TXN_STATUS_APPROVED = "APPROVED"
TXN_STATUS_REJECTED = "REJECTED"
TXN_STATUS_COMPLETED = "COMPLETED"
TXN_STATUS_CANCELLED = "CANCELLED"


class Transaction(db.Model):
    """
    Inventory ledger entry.

    quantity is always a non-negative magnitude; direction comes from the type and
    from which side (source/destination) is populated. Once COMPLETED the row is
    never changed again.

    Lifecycle:
        PENDING --approve--> APPROVED --process--> COMPLETED
        PENDING --reject--> REJECTED
        APPROVED --process fails--> CANCELLED (failure appended to notes)
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_txn_quantity_nonneg"),
        db.Index("ix_txn_item_type_status_date", "item_id", "type", "status", "transaction_date"),
        db.Index("ix_txn_from_property", "from_property_id"),
        db.Index("ix_txn_to_property", "to_property_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    from_property_id = db.Column(db.String(64), nullable=True)
    from_unit_id = db.Column(db.String(64), nullable=True)
    from_room_id = db.Column(db.String(64), nullable=True)
    from_location = db.Column(db.String(512), nullable=True)

    to_property_id = db.Column(db.String(64), nullable=True)
    to_unit_id = db.Column(db.String(64), nullable=True)
    to_room_id = db.Column(db.String(64), nullable=True)
    to_location = db.Column(db.String(512), nullable=True)

    unit_cost_cents = db.Column(db.Integer, nullable=True)
    total_cost_cents = db.Column(db.Integer, nullable=True)

    reason = db.Column(db.String(255), nullable=True)
    reason_code = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    staging_design_id = db.Column(db.String(64), nullable=True, index=True)

    created_by = db.Column(db.String(64), nullable=True)
    approved_by = db.Column(db.String(64), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.String(64), nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    transaction_date = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    item = db.relationship("InventoryItem", backref=db.backref("transactions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def source(self) -> Optional[LocationKey]:
        if self.from_property_id is None:
            return None
        return LocationKey(self.from_property_id, self.from_unit_id, self.from_room_id)

    @source.setter
    def source(self, key: Optional[LocationKey]) -> None:
        self.from_property_id = key.property_id if key else None
        self.from_unit_id = key.unit_id if key else None
        self.from_room_id = key.room_id if key else None

    @property
    def destination(self) -> Optional[LocationKey]:
        if self.to_property_id is None:
            return None
        return LocationKey(self.to_property_id, self.to_unit_id, self.to_room_id)

    @destination.setter
    def destination(self, key: Optional[LocationKey]) -> None:
        self.to_property_id = key.property_id if key else None
        self.to_unit_id = key.unit_id if key else None
        self.to_room_id = key.room_id if key else None

    def append_note(self, text: str) -> None:
        self.notes = f"{self.notes}\n{text}" if self.notes else text

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} type={self.type} status={self.status} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "item_id": self.item_id,
            "quantity": self.quantity,
            "source": self.source.to_dict() if self.source else None,
            "destination": self.destination.to_dict() if self.destination else None,
            "from_location": self.from_location,
            "to_location": self.to_location,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "reason": self.reason,
            "reason_code": self.reason_code,
            "notes": self.notes,
            "staging_design_id": self.staging_design_id,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": to_utc_z(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
            "completed_at": to_utc_z(self.completed_at),
            "transaction_date": to_utc_z(self.transaction_date),
            "created_at": to_utc_z(self.created_at),
        }
