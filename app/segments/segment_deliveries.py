from __future__ import annotations

import os

from flask import Blueprint, jsonify, request

from app.errors import NotFound, PermissionDenied, ValidationError
from app.extensions import db
from app.models import Delivery, Order
from app.services.delivery_service import (
    calculate_courier_cost,
    create_delivery,
    delivery_history,
    handle_courier_webhook,
    list_providers,
    reassign_delivery,
    update_delivery_status,
)
from app.utils.auth import require_user, role_of, vendor_for

deliveries_bp = Blueprint("deliveries_bp", __name__, url_prefix="/api")


def _check_order_access(u, order: Order) -> None:
    role = role_of(u)
    if role == "admin":
        return
    if role == "vendor" and int(vendor_for(u).id) == int(order.vendor_id):
        return
    raise PermissionDenied("not your order")


@deliveries_bp.get("/delivery-providers")
def providers():
    rows = list_providers(active_only=(request.args.get("all") or "").strip() not in ("1", "true"))
    return jsonify({"ok": True, "items": [p.to_dict() for p in rows]}), 200


@deliveries_bp.post("/deliveries/quote")
def quote():
    data = request.get_json(silent=True) or {}
    provider_id = data.get("provider_id")
    if provider_id is None:
        raise ValidationError("provider_id is required")
    order = None
    if data.get("order_id") is not None:
        order = db.session.get(Order, int(data.get("order_id")))
        if order is None:
            raise NotFound(f"order {data.get('order_id')} not found")
    result = calculate_courier_cost(
        provider_id,
        weight_kg=data.get("weight_kg"),
        delivery_address=data.get("delivery_address"),
        distance_km=data.get("distance_km"),
        order=order,
    )
    return jsonify({"ok": True, "quote": result.to_dict()}), 200


@deliveries_bp.post("/deliveries")
def create():
    u = require_user("vendor", "admin")
    data = request.get_json(silent=True) or {}
    order_id = data.get("order_id")
    if order_id is None:
        raise ValidationError("order_id is required")
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFound(f"order {order_id} not found")
    _check_order_access(u, order)
    provider_id = data.get("provider_id") or (os.getenv("DEFAULT_DELIVERY_PROVIDER_ID") or "").strip()
    delivery = create_delivery(
        order.id,
        provider_id,
        weight_kg=data.get("weight_kg"),
        package_description=data.get("package_description"),
        actor_role=role_of(u),
        actor_id=int(u.id),
    )
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 201


@deliveries_bp.get("/deliveries/<int:delivery_id>")
def get_delivery(delivery_id: int):
    u = require_user("vendor", "admin", "courier")
    delivery = db.session.get(Delivery, int(delivery_id))
    if delivery is None:
        raise NotFound(f"delivery {delivery_id} not found")
    if role_of(u) == "vendor":
        _check_order_access(u, db.session.get(Order, int(delivery.order_id)))
    payload = delivery.to_dict()
    payload["updates"] = [row.to_dict() for row in delivery_history(delivery.id)]
    return jsonify({"ok": True, "delivery": payload}), 200


@deliveries_bp.patch("/deliveries/<int:delivery_id>/status")
def patch_status(delivery_id: int):
    require_user("admin", "courier")
    data = request.get_json(silent=True) or {}
    status = str(data.get("status") or "").strip()
    if not status:
        raise ValidationError("status is required")
    delivery = update_delivery_status(
        delivery_id,
        status,
        description=data.get("description"),
        external_tracking_id=data.get("external_tracking_id"),
        source="api",
        location=data.get("location"),
        external_event_id=data.get("event_id"),
    )
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200


@deliveries_bp.post("/deliveries/<int:delivery_id>/reassign")
def reassign(delivery_id: int):
    u = require_user()
    data = request.get_json(silent=True) or {}
    provider_id = data.get("provider_id")
    if provider_id is None:
        raise ValidationError("provider_id is required")
    delivery = reassign_delivery(delivery_id, provider_id, data.get("reason"), role_of(u), actor_id=int(u.id))
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200


@deliveries_bp.post("/deliveries/webhook/<provider_id>")
def courier_webhook(provider_id: str):
    secret = (os.getenv("COURIER_WEBHOOK_SECRET") or "").strip()
    if secret and (request.headers.get("X-Courier-Secret") or "").strip() != secret:
        raise PermissionDenied("invalid courier webhook secret")
    data = request.get_json(silent=True) or {}
    delivery = handle_courier_webhook(provider_id, data)
    return jsonify({"ok": True, "delivery_id": int(delivery.id), "status": delivery.status}), 200
