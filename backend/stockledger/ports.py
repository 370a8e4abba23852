"""Collaborators the ledger consults but never mutates.

The catalogue and the location directory live behind the external API; the
ledger only needs to know whether an id exists and how a location is
configured. The clock is injected so expiry logic can be tested.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping


@dataclass(frozen=True)
class ItemInfo:
    exists: bool
    display_name: str = ""
    sku: str | None = None


@dataclass(frozen=True)
class LocationInfo:
    exists: bool
    allows_negative_stock: bool = False
    parent_id: str | None = None
    max_quantity: int | None = None
    allow_reservations: bool = True
    max_reservation_percentage: float | None = None
    allow_mixed_skus: bool = True
    allow_mixed_lots: bool = True


MISSING_ITEM = ItemInfo(exists=False)
MISSING_LOCATION = LocationInfo(exists=False)


class CatalogLookup(ABC):
    @abstractmethod
    def resolve_item(self, item_id: str) -> ItemInfo: ...


class LocationLookup(ABC):
    @abstractmethod
    def resolve_location(self, location_id: str) -> LocationInfo: ...


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time as a naive UTC datetime."""


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, fixed_time: datetime | None = None):
        self._time = to_naive_utc(fixed_time) or datetime(2026, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._time

    def set(self, value: datetime) -> None:
        self._time = to_naive_utc(value)

    def advance(self, **delta) -> datetime:
        self._time = self._time + timedelta(**delta)
        return self._time


class StaticCatalog(CatalogLookup):
    def __init__(self, items: Mapping[str, ItemInfo] | None = None):
        self._items = dict(items or {})

    def add(self, item_id: str, display_name: str = "", sku: str | None = None) -> ItemInfo:
        info = ItemInfo(exists=True, display_name=display_name or item_id, sku=sku)
        self._items[item_id] = info
        return info

    def resolve_item(self, item_id: str) -> ItemInfo:
        return self._items.get(item_id, MISSING_ITEM)


class StaticLocations(LocationLookup):
    def __init__(self, locations: Mapping[str, LocationInfo] | None = None):
        self._locations = dict(locations or {})

    def add(self, location_id: str, **config) -> LocationInfo:
        info = LocationInfo(exists=True, **config)
        self._locations[location_id] = info
        return info

    def resolve_location(self, location_id: str) -> LocationInfo:
        return self._locations.get(location_id, MISSING_LOCATION)


class OpenCatalog(CatalogLookup):
    """Accepts every item id; used when no catalogue is wired in."""

    def resolve_item(self, item_id: str) -> ItemInfo:
        return ItemInfo(exists=bool(item_id), display_name=item_id, sku=item_id)


class OpenLocations(LocationLookup):
    """Accepts every location id with the strict default configuration."""

    def resolve_location(self, location_id: str) -> LocationInfo:
        return LocationInfo(exists=bool(location_id))
