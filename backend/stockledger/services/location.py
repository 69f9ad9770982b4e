# backend/stockledger/services/location.py
"""
Location identity for inventory levels.

A location is (property_id, unit_id?, room_id?). Two locations are the same only if
all three components match exactly: an absent unit is not a wildcard and is not
the same as an empty-string unit.

identity() is the canonical string stored on InventoryLevel.location_key and used
for uniqueness and lock ordering. to_path() is for display only.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from ..errors import ValidationError


@dataclass(frozen=True)
class LocationKey:
    property_id: str
    unit_id: Optional[str] = None
    room_id: Optional[str] = None

    def identity(self) -> str:
        return json.dumps([self.property_id, self.unit_id, self.room_id], separators=(",", ":"))

    def to_dict(self) -> dict:
        return {
            "property_id": self.property_id,
            "unit_id": self.unit_id,
            "room_id": self.room_id,
        }


def resolve(property_id: str, unit_id: Optional[str] = None, room_id: Optional[str] = None) -> LocationKey:
    if not isinstance(property_id, str) or not property_id:
        raise ValidationError("property_id is required")
    for name, value in (("unit_id", unit_id), ("room_id", room_id)):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")
    return LocationKey(property_id, unit_id, room_id)


def from_identity(identity: str) -> LocationKey:
    property_id, unit_id, room_id = json.loads(identity)
    return LocationKey(property_id, unit_id, room_id)


def to_path(key: LocationKey, location_name: Optional[str] = None) -> str:
    parts = [key.property_id, key.unit_id, key.room_id, location_name]
    return "/".join(p for p in parts if p)
