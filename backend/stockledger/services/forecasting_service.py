# backend/stockledger/services/forecasting_service.py
"""
Demand forecasting adapter.

Turns completed CONSUME history into a dense daily series, asks the external
prediction service for a demand curve, and falls back to a flat 14-day moving
average whenever that call fails. Results are stored per (item, property) and feed
reorder recommendations.

Forecasting never takes level locks and never writes levels; the only write is the
forecast batch itself (purge of stale rows + insert, one commit).
"""
from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import ForecastError, InsufficientHistory, PredictionServiceError
from ..models import DemandForecast, InventoryItem, InventoryLevel, Transaction
from ..models.transactions import TXN_STATUS_COMPLETED, TXN_TYPE_CONSUME
from ..time_utils import day_range, parse_iso_date, start_of_day, utc_today, utcnow
from .concurrency import run_atomic
from .item_service import get_item
from .prediction_client import PredictionClient

logger = logging.getLogger(__name__)

FALLBACK_MODEL_VERSION = "simple-ma"
FALLBACK_CONFIDENCE = 0.6
FALLBACK_BAND = 0.30

# z-score for a ~95% service level
SERVICE_LEVEL_Z = 1.65


def _property_filter(column, property_id: Optional[str]):
    return column.is_(None) if property_id is None else column == property_id


def get_historical_consumption(
    item_id: int,
    property_id: str | None = None,
    days: int = 90,
    *,
    today: date | None = None,
) -> list[dict]:
    """
    Daily consumed quantity for the trailing `days` days ending today.

    Only COMPLETED CONSUME transactions count; when property_id is given only
    consumption from that property counts. Days without consumption are present
    with quantity 0.
    """
    today = today or utc_today()
    first_day = today - timedelta(days=days - 1)

    q = db.session.query(Transaction.transaction_date, Transaction.quantity).filter(
        Transaction.item_id == item_id,
        Transaction.type == TXN_TYPE_CONSUME,
        Transaction.status == TXN_STATUS_COMPLETED,
        Transaction.transaction_date >= start_of_day(first_day),
    )
    if property_id is not None:
        q = q.filter(Transaction.from_property_id == property_id)

    daily = {day: 0 for day in day_range(first_day, days)}
    for occurred_at, quantity in q.all():
        day = occurred_at.date()
        if day in daily:
            daily[day] += quantity

    return [{"date": day.isoformat(), "quantity": qty} for day, qty in daily.items()]


def simple_moving_average_forecast(
    history: list[dict],
    periods: int,
    *,
    window: int = 14,
    start: date | None = None,
) -> dict:
    """Flat forecast at the mean of the last `window` days, +/-30%, confidence 0.6."""
    recent = history[-window:]
    avg_demand = sum(d["quantity"] for d in recent) / len(recent) if recent else 0.0
    start = start or utc_today()

    forecasts = [
        {
            "date": (start + timedelta(days=i)).isoformat(),
            "predictedDemand": avg_demand,
            "lowerBound": avg_demand * (1 - FALLBACK_BAND),
            "upperBound": avg_demand * (1 + FALLBACK_BAND),
            "confidence": FALLBACK_CONFIDENCE,
        }
        for i in range(1, periods + 1)
    ]
    return {"forecasts": forecasts, "modelVersion": FALLBACK_MODEL_VERSION}


def calculate_std_dev(values: list[float]) -> float:
    """Population standard deviation."""
    if not values:
        return 0.0
    avg = sum(values) / len(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def store_forecast_results(
    item_id: int,
    property_id: str | None,
    forecast_data: dict,
    *,
    now: datetime | None = None,
    retention_days: int = 7,
) -> list[DemandForecast]:
    """Purge this (item, property)'s batches older than retention, insert the new batch."""
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)

    def _op():
        db.session.query(DemandForecast).filter(
            DemandForecast.item_id == item_id,
            _property_filter(DemandForecast.property_id, property_id),
            DemandForecast.forecast_date < cutoff,
        ).delete(synchronize_session=False)

        rows = []
        for f in forecast_data["forecasts"]:
            period_start = start_of_day(parse_iso_date(f["date"]))
            rows.append(DemandForecast(
                item_id=item_id,
                property_id=property_id,
                forecast_date=now,
                period_start=period_start,
                period_end=period_start + timedelta(days=1),
                predicted_demand=f["predictedDemand"],
                lower_bound=f["lowerBound"],
                upper_bound=f["upperBound"],
                confidence=f["confidence"],
                model_version=forecast_data["modelVersion"],
            ))
        db.session.add_all(rows)
        db.session.commit()
        return rows

    return run_atomic(_op)


def forecast_demand(
    item_id: int,
    property_id: str | None = None,
    period_days: int | None = None,
    *,
    client: PredictionClient | None = None,
) -> dict:
    """
    Forecast daily demand for an item and derive safety stock / reorder quantity.

    Raises:
        ItemNotFound: no such item
        InsufficientHistory: fewer than the minimum number of days with consumption
    """
    config = current_app.config
    if period_days is None:
        period_days = config["FORECAST_DAYS"]
    if period_days < 1:
        raise ForecastError("period_days must be positive")

    get_item(item_id)

    history = get_historical_consumption(item_id, property_id, config["FORECAST_HISTORICAL_DAYS"])
    days_with_data = sum(1 for d in history if d["quantity"] > 0)
    if days_with_data < config["FORECAST_MIN_HISTORY_DAYS"]:
        raise InsufficientHistory(
            f"Insufficient historical data for forecasting: {days_with_data} days with consumption, "
            f"minimum {config['FORECAST_MIN_HISTORY_DAYS']} required"
        )

    client = client or PredictionClient.from_config(config)
    used_fallback = False
    try:
        forecast_data = client.predict(history, period_days)
    except PredictionServiceError as exc:
        logger.warning("Prediction service unavailable for item %s, using moving average: %s", item_id, exc)
        forecast_data = simple_moving_average_forecast(
            history, period_days, window=config["FORECAST_MOVING_AVERAGE_WINDOW"]
        )
        used_fallback = True

    store_forecast_results(
        item_id, property_id, forecast_data, retention_days=config["FORECAST_RETENTION_DAYS"]
    )
    logger.info(
        "Stored %s-day forecast for item %s (property %s, model %s)",
        len(forecast_data["forecasts"]), item_id, property_id, forecast_data["modelVersion"],
    )

    demand = [f["predictedDemand"] for f in forecast_data["forecasts"]]
    avg_demand = sum(demand) / len(demand)
    safety_stock = math.ceil(calculate_std_dev(demand) * SERVICE_LEVEL_Z)
    recommended_order = math.ceil(avg_demand * config["FORECAST_LEAD_TIME_DAYS"] + safety_stock)

    return {
        "item_id": item_id,
        "property_id": property_id,
        "forecasts": forecast_data["forecasts"],
        "model_version": forecast_data["modelVersion"],
        "used_fallback": used_fallback,
        "safety_stock": safety_stock,
        "recommended_order": recommended_order,
    }


def get_forecast(item_id: int, property_id: str | None = None) -> list[DemandForecast]:
    """
    Rows of the latest stored batch for (item, property) generated within the
    retention window, for periods from today on, ordered by period.
    """
    cutoff = utcnow() - timedelta(days=current_app.config["FORECAST_RETENTION_DAYS"])
    scope = (
        DemandForecast.item_id == item_id,
        _property_filter(DemandForecast.property_id, property_id),
    )

    latest = db.session.query(func.max(DemandForecast.forecast_date)).filter(
        *scope, DemandForecast.forecast_date >= cutoff
    ).scalar()
    if latest is None:
        return []

    return (
        db.session.query(DemandForecast)
        .filter(
            *scope,
            DemandForecast.forecast_date == latest,
            DemandForecast.period_start >= start_of_day(utc_today()),
        )
        .order_by(DemandForecast.period_start.asc())
        .all()
    )


def update_all_forecasts(*, client: PredictionClient | None = None) -> list[dict]:
    """
    Re-forecast every active item in a forecast category that had consumption in
    the trailing window, once per property holding a level of it.
    """
    config = current_app.config
    window_start = utcnow() - timedelta(days=config["FORECAST_HISTORICAL_DAYS"])

    recent_consumers = db.session.query(Transaction.item_id).filter(
        Transaction.type == TXN_TYPE_CONSUME,
        Transaction.transaction_date >= window_start,
    )
    items = (
        db.session.query(InventoryItem)
        .filter(
            InventoryItem.is_active.is_(True),
            InventoryItem.category.in_(config["FORECAST_CATEGORIES"]),
            InventoryItem.id.in_(recent_consumers),
        )
        .order_by(InventoryItem.id)
        .all()
    )

    results = []
    for item in items:
        properties = sorted({level.property_id for level in item.levels})
        for property_id in properties:
            try:
                forecast = forecast_demand(
                    item.id, property_id, config["FORECAST_DAYS"], client=client
                )
                results.append({"item_id": item.id, "property_id": property_id, "success": True, "forecast": forecast})
            except ForecastError as exc:
                results.append({"item_id": item.id, "property_id": property_id, "success": False, "error": str(exc)})
    return results


def get_reorder_recommendations(property_id: str | None = None) -> list[dict]:
    """
    Levels whose available stock is below next-week forecast demand plus half the
    reorder point, most urgent (fewest days of stock) first. Levels without a
    stored forecast are skipped.
    """
    config = current_app.config
    q = (
        db.session.query(InventoryLevel)
        .join(InventoryItem, InventoryLevel.item_id == InventoryItem.id)
        .filter(
            InventoryItem.is_active.is_(True),
            InventoryItem.category.in_(config["FORECAST_CATEGORIES"]),
        )
    )
    if property_id is not None:
        q = q.filter(InventoryLevel.property_id == property_id)

    recommendations = []
    for level in q.order_by(InventoryLevel.id).all():
        forecasts = get_forecast(level.item_id, level.property_id)
        if not forecasts:
            continue

        next_7_days_demand = sum(f.predicted_demand for f in forecasts[:7])
        lead_time_demand = math.ceil(next_7_days_demand)
        reorder_level = lead_time_demand + 0.5 * (level.effective_reorder_point or 0)

        if level.quantity_available < reorder_level:
            daily_demand = next_7_days_demand / 7
            days_of_stock = level.quantity_available / daily_demand if daily_demand > 0 else math.inf
            recommendations.append({
                "item_id": level.item_id,
                "sku": level.item.sku,
                "item_name": level.item.name,
                "level_id": level.id,
                "property_id": level.property_id,
                "location_path": level.location_path,
                "current_stock": level.quantity_available,
                "forecasted_demand": lead_time_demand,
                "reorder_level": math.ceil(reorder_level),
                "recommended_order": level.item.reorder_quantity,
                "days_of_stock": days_of_stock,
            })

    return sorted(recommendations, key=lambda r: r["days_of_stock"])
