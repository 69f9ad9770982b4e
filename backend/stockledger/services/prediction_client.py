# Overview: HTTP client for the external demand prediction service.

"""
Request:  POST {base_url}/forecast
          {"history": [{"date": "YYYY-MM-DD", "quantity": n}, ...], "horizonDays": n}
Response: {"forecasts": [{"date", "predictedDemand", "lowerBound", "upperBound",
           "confidence"}, ...], "modelVersion": "..."}

Every failure (transport error, timeout, non-2xx, malformed body) is raised as
PredictionServiceError so the caller can fall back to the moving average.
"""
from __future__ import annotations

import httpx

from ..errors import PredictionServiceError
from ..time_utils import parse_iso_date

_REQUIRED_FIELDS = ("date", "predictedDemand", "lowerBound", "upperBound", "confidence")


class PredictionClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config) -> "PredictionClient":
        return cls(
            config["PREDICTION_SERVICE_URL"],
            timeout=config.get("PREDICTION_TIMEOUT_SECONDS", 10.0),
        )

    def predict(self, history: list[dict], horizon_days: int) -> dict:
        payload = {"history": history, "horizonDays": horizon_days}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(f"{self.base_url}/forecast", json=payload)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PredictionServiceError(f"prediction service call failed: {exc}") from exc

        return _parse_response(body, horizon_days)


def _parse_response(body, horizon_days: int) -> dict:
    if not isinstance(body, dict):
        raise PredictionServiceError("prediction response is not an object")

    rows = body.get("forecasts")
    if not isinstance(rows, list) or not rows:
        raise PredictionServiceError("prediction response has no forecasts")

    forecasts = []
    for row in rows[:horizon_days]:
        if not isinstance(row, dict) or any(row.get(f) is None for f in _REQUIRED_FIELDS):
            raise PredictionServiceError("prediction response row is incomplete")
        try:
            day = parse_iso_date(row["date"])
            if day is None:
                raise ValueError("empty date")
            forecasts.append({
                "date": day.isoformat(),
                "predictedDemand": float(row["predictedDemand"]),
                "lowerBound": float(row["lowerBound"]),
                "upperBound": float(row["upperBound"]),
                "confidence": float(row["confidence"]),
            })
        except (AttributeError, TypeError, ValueError) as exc:
            raise PredictionServiceError(f"prediction response row is malformed: {exc}") from exc

    return {
        "forecasts": forecasts,
        "modelVersion": str(body.get("modelVersion") or "external"),
    }
