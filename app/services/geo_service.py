from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from app.errors import ValidationError

EARTH_RADIUS_KM = 6371.0
NEARBY_THRESHOLD_KM = 25.0

# Nairobi CBD
DEFAULT_LOCATION = (-1.2921, 36.8219)

Coordinates = tuple[float, float]
LocationExtractor = Callable[[Any], "Coordinates | dict | None"]


@dataclass
class RankedItem:
    item: Any
    distance_km: float

    def to_dict(self, serializer: Callable[[Any], dict] | None = None) -> dict:
        if serializer is not None:
            payload = dict(serializer(self.item))
        elif isinstance(self.item, dict):
            payload = dict(self.item)
        else:
            payload = {"item": self.item}
        payload["distance_km"] = None if math.isinf(self.distance_km) else self.distance_km
        return payload


def _coerce(point) -> Coordinates | None:
    if point is None:
        return None
    if isinstance(point, dict):
        lat = point.get("lat", point.get("latitude"))
        lng = point.get("lng", point.get("longitude"))
    else:
        try:
            lat, lng = point
        except (TypeError, ValueError):
            return None
    if lat is None or lng is None:
        return None
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        return None
    if not (-90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0):
        return None
    return lat_f, lng_f


def _require(point, name: str) -> Coordinates:
    coords = _coerce(point)
    if coords is None:
        raise ValidationError(f"{name} must be a valid (latitude, longitude) pair")
    return coords


def _haversine_km(a: Coordinates, b: Coordinates) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    # Float error can push h a hair past 1 for antipodal points.
    h = min(1.0, max(0.0, h))
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def distance_km(a, b) -> float:
    """Great-circle distance in km between two (lat, lng) points, rounded to 2dp."""
    return round(_haversine_km(_require(a, "a"), _require(b, "b")), 2)


def _rank(items: Iterable[Any], origin: Coordinates, location_extractor: LocationExtractor) -> list[RankedItem]:
    ranked = []
    for item in items:
        loc = _coerce(location_extractor(item))
        if loc is None:
            ranked.append(RankedItem(item=item, distance_km=math.inf))
        else:
            ranked.append(RankedItem(item=item, distance_km=round(_haversine_km(origin, loc), 2)))
    return ranked


def sort_by_proximity(items: Iterable[Any], origin, location_extractor: LocationExtractor) -> list[RankedItem]:
    """Nearest first; items without a location sort last."""
    ranked = _rank(items, _require(origin, "origin"), location_extractor)
    # sorted() is stable, so ties and unlocated items keep input order.
    return sorted(ranked, key=lambda r: r.distance_km)


def filter_by_radius(
    items: Iterable[Any],
    origin,
    radius_km: float,
    location_extractor: LocationExtractor,
) -> list[RankedItem]:
    """Items within ``radius_km`` of ``origin``, nearest first; unlocated items are dropped."""
    try:
        radius = float(radius_km)
    except (TypeError, ValueError):
        raise ValidationError("radius_km must be a number")
    if not math.isfinite(radius) or radius < 0:
        raise ValidationError("radius_km must be a non-negative number")
    ranked = _rank(items, _require(origin, "origin"), location_extractor)
    inside = [r for r in ranked if not math.isinf(r.distance_km) and r.distance_km <= radius]
    return sorted(inside, key=lambda r: r.distance_km)


def format_distance(km: float) -> str:
    if km < 1:
        return f"{int(round(km * 1000))}m away"
    if km < 10:
        return f"{km:.1f}km away"
    return f"{int(round(km))}km away"


def is_nearby(a, b, threshold_km: float = NEARBY_THRESHOLD_KM) -> bool:
    return distance_km(a, b) <= float(threshold_km)
