from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.errors import ExternalServiceError, NotFound, PermissionDenied, ValidationError
from app.extensions import db
from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from app.integrations.payments.factory import build_payments_provider
from app.models import Appointment, Order, User
from app.services.order_lifecycle_service import (
    confirm_by_token,
    create_order_from_payment,
    find_by_confirmation_token,
    get_tracking,
    order_summary,
    transition_order,
    update_task_status,
)
from app.utils.auth import require_user, role_of, vendor_for
from app.utils.platform_settings import get_integration_settings

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _load_order_for(u: User, order_id: int) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFound(f"order {order_id} not found")
    role = role_of(u)
    if role == "admin":
        return order
    if role == "vendor" and int(vendor_for(u).id) == int(order.vendor_id):
        return order
    if int(order.buyer_id) == int(u.id):
        return order
    raise PermissionDenied("not your order")


def _actor_role_for(u: User, order: Order) -> str:
    role = role_of(u)
    if role in ("admin", "vendor"):
        return role
    return "buyer"


def _verify_payment(reference: str):
    try:
        provider = build_payments_provider(get_integration_settings())
        return provider.verify(reference)
    except IntegrationDisabledError:
        raise ExternalServiceError("payments are not enabled", code="payments_unavailable")
    except IntegrationMisconfiguredError as e:
        raise ExternalServiceError(str(e), code="payments_misconfigured")
    except RuntimeError as e:
        current_app.logger.warning("payment_verify_failed reference=%s err=%s", reference, e)
        raise ExternalServiceError(f"payment verification failed: {e}")


@orders_bp.post("/orders/verify-payment")
def verify_payment():
    u = require_user()
    data = request.get_json(silent=True) or {}
    reference = str(data.get("reference") or "").strip()
    if not reference:
        raise ValidationError("reference is required")

    result = _verify_payment(reference)
    if not result.succeeded:
        raise ValidationError(f"payment not successful (status={result.status or 'unknown'})", code="payment_not_successful")

    metadata = dict(result.metadata or {})
    for key in (
        "vendor_id",
        "order_type",
        "delivery_address",
        "service_location",
        "delivery_latitude",
        "delivery_longitude",
        "delivery_fee",
        "notes",
    ):
        if data.get(key) is not None:
            metadata[key] = data.get(key)
    if result.amount and result.amount > 0:
        metadata["amount_paid"] = result.amount
    metadata["payment_status"] = "completed"
    metadata.setdefault("payment_method", "paystack")
    items = data.get("items") or metadata.get("items") or []

    order, created = create_order_from_payment(reference, int(u.id), items, metadata)
    if not created and int(order.buyer_id) != int(u.id) and role_of(u) != "admin":
        current_app.logger.warning(
            "payment_verify_foreign_reference reference=%s user_id=%s order_id=%s", reference, u.id, order.id
        )
        raise PermissionDenied("payment reference belongs to another order")
    return jsonify({"ok": True, "created": created, "order": order.to_dict()}), (201 if created else 200)


@orders_bp.get("/orders")
def list_orders():
    u = require_user()
    role = role_of(u)
    q = Order.query
    if role == "vendor":
        q = q.filter_by(vendor_id=int(vendor_for(u).id))
    elif role != "admin":
        q = q.filter_by(buyer_id=int(u.id))
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter_by(status=status)
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(100).all()
    return jsonify({"ok": True, "items": [o.to_dict(include_items=False) for o in rows]}), 200


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    u = require_user()
    order = _load_order_for(u, order_id)
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.get("/orders/<int:order_id>/tracking")
def order_tracking(order_id: int):
    u = require_user()
    order = _load_order_for(u, order_id)
    rows = get_tracking(order.id)
    return jsonify({"ok": True, "order_id": int(order.id), "status": order.status, "tracking": [t.to_dict() for t in rows]}), 200


@orders_bp.post("/orders/<int:order_id>/transition")
def order_transition(order_id: int):
    u = require_user()
    order = _load_order_for(u, order_id)
    data = request.get_json(silent=True) or {}
    action = str(data.get("action") or "").strip().lower()
    if not action:
        raise ValidationError("action is required")
    order = transition_order(order.id, action, _actor_role_for(u, order), data, actor_id=int(u.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/orders/<int:order_id>/cancel")
def order_cancel(order_id: int):
    u = require_user()
    order = _load_order_for(u, order_id)
    data = request.get_json(silent=True) or {}
    order = transition_order(order.id, "cancel", _actor_role_for(u, order), data, actor_id=int(u.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


def _vendor_action(order_id: int, action: str):
    u = require_user("vendor", "admin")
    order = _load_order_for(u, order_id)
    data = request.get_json(silent=True) or {}
    order = transition_order(order.id, action, role_of(u), data, actor_id=int(u.id))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/vendor/orders/<int:order_id>/accept")
def vendor_accept(order_id: int):
    return _vendor_action(order_id, "accept")


@orders_bp.post("/vendor/orders/<int:order_id>/ready")
def vendor_ready(order_id: int):
    return _vendor_action(order_id, "ready")


@orders_bp.post("/vendor/orders/<int:order_id>/complete")
def vendor_complete(order_id: int):
    return _vendor_action(order_id, "complete")


@orders_bp.post("/vendor/orders/<int:order_id>/cancel")
def vendor_cancel(order_id: int):
    return _vendor_action(order_id, "cancel")


@orders_bp.patch("/vendor/tasks/<int:appointment_id>/status")
def vendor_task_status(appointment_id: int):
    u = require_user("vendor", "admin")
    appt = db.session.get(Appointment, int(appointment_id))
    if appt is None:
        raise NotFound(f"appointment {appointment_id} not found")
    if role_of(u) == "vendor" and int(vendor_for(u).id) != int(appt.vendor_id):
        raise PermissionDenied("not your task")
    data = request.get_json(silent=True) or {}
    status = str(data.get("status") or "").strip()
    if not status:
        raise ValidationError("status is required")
    appt = update_task_status(
        appt.id,
        status,
        vendor_notes=data.get("vendor_notes"),
        actor_role=role_of(u),
        actor_id=int(u.id),
    )
    order = db.session.get(Order, int(appt.order_id))
    return jsonify({"ok": True, "appointment": appt.to_dict(), "order_status": order.status if order else None}), 200


@orders_bp.get("/orders/confirm/<token>")
def confirmation_view(token: str):
    order = find_by_confirmation_token(token)
    return jsonify({"ok": True, "order": order_summary(order)}), 200


@orders_bp.post("/orders/confirm/<token>")
def confirmation_submit(token: str):
    data = request.get_json(silent=True) or {}
    order = confirm_by_token(token, str(data.get("action") or ""), data.get("reason"))
    message = "Thank you for confirming your order." if order.status == "customer_confirmed" else "Your report has been received."
    return jsonify({"ok": True, "status": order.status, "message": message}), 200


@orders_bp.get("/public/orders/<token>")
def public_order(token: str):
    order = find_by_confirmation_token(token)
    payload = order_summary(order)
    payload["tracking"] = [t.to_dict() for t in get_tracking(order.id)]
    return jsonify({"ok": True, "order": payload}), 200
