from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.errors import ValidationError
from app.models import Vendor
from app.services.geo_service import DEFAULT_LOCATION, filter_by_radius, format_distance, sort_by_proximity

vendors_geo_bp = Blueprint("vendors_geo_bp", __name__, url_prefix="/api")


def _float_arg(name: str, default: float | None = None) -> float | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number")


@vendors_geo_bp.get("/vendors/nearby")
def nearby_vendors():
    lat = _float_arg("lat", DEFAULT_LOCATION[0])
    lng = _float_arg("lng", DEFAULT_LOCATION[1])
    radius = _float_arg("radius_km")
    vendors = Vendor.query.filter_by(is_active=True).all()
    origin = (lat, lng)
    if radius is None:
        ranked = sort_by_proximity(vendors, origin, lambda v: v.location())
    else:
        ranked = filter_by_radius(vendors, origin, radius, lambda v: v.location())
    items = []
    for r in ranked:
        row = r.to_dict(serializer=lambda v: v.to_public_dict())
        row["distance_label"] = format_distance(r.distance_km) if row["distance_km"] is not None else ""
        items.append(row)
    return jsonify({"ok": True, "origin": {"lat": lat, "lng": lng}, "radius_km": radius, "items": items}), 200
