from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class DemandForecast(db.Model):
    """
    One day of predicted demand for an item, optionally scoped to a property.

    forecast_date is when the batch was generated; period_start/period_end bound
    the predicted day. Batches older than the retention window are purged when a
    new batch for the same (item, property) is stored.
    """
    __tablename__ = "demand_forecasts"
    __table_args__ = (
        db.Index("ix_forecasts_item_property_period", "item_id", "property_id", "period_start"),
        db.Index("ix_forecasts_item_property_generated", "item_id", "property_id", "forecast_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False)
    property_id = db.Column(db.String(64), nullable=True)

    forecast_date = db.Column(db.DateTime(timezone=True), nullable=False)
    period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    period_end = db.Column(db.DateTime(timezone=True), nullable=False)

    predicted_demand = db.Column(db.Float, nullable=False)
    lower_bound = db.Column(db.Float, nullable=True)
    upper_bound = db.Column(db.Float, nullable=True)
    confidence = db.Column(db.Float, nullable=True)

    model_version = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "property_id": self.property_id,
            "forecast_date": to_utc_z(self.forecast_date),
            "period_start": to_utc_z(self.period_start),
            "period_end": to_utc_z(self.period_end),
            "predicted_demand": self.predicted_demand,
            "lower_bound": self.lower_bound,
            "upper_bound": self.upper_bound,
            "confidence": self.confidence,
            "model_version": self.model_version,
        }
