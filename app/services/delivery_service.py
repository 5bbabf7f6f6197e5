from __future__ import annotations

import math
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from app.extensions import db
from app.models import Delivery, DeliveryProvider, DeliveryUpdate, Order, Vendor
from app.services import geo_service
from app.services.notification_service import CHANNEL_EMAIL, CHANNEL_SMS, queue_notification, schedule_dispatch
from app.services.order_lifecycle_service import OrderStatus, apply_order_status
from app.utils.events import log_event
from app.utils.money import round2, to_decimal


class DeliveryStatus:
    PENDING = "pending"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = {DELIVERED, CANCELLED}

    ALLOWED = {
        PENDING: {PICKUP_SCHEDULED, PICKED_UP, IN_TRANSIT, OUT_FOR_DELIVERY, DELIVERED, FAILED, CANCELLED},
        PICKUP_SCHEDULED: {PICKED_UP, IN_TRANSIT, OUT_FOR_DELIVERY, DELIVERED, FAILED, CANCELLED},
        PICKED_UP: {IN_TRANSIT, OUT_FOR_DELIVERY, DELIVERED, FAILED},
        IN_TRANSIT: {OUT_FOR_DELIVERY, DELIVERED, FAILED},
        OUT_FOR_DELIVERY: {IN_TRANSIT, DELIVERED, FAILED},
        FAILED: {PENDING, PICKUP_SCHEDULED, PICKED_UP, CANCELLED},
        DELIVERED: set(),
        CANCELLED: set(),
    }
    ALL = set(ALLOWED.keys())


# Delivery status -> order status it drives
ORDER_PROPAGATION = {
    DeliveryStatus.PICKED_UP: OrderStatus.DISPATCHED,
    DeliveryStatus.IN_TRANSIT: OrderStatus.IN_DELIVERY,
    DeliveryStatus.OUT_FOR_DELIVERY: OrderStatus.IN_DELIVERY,
    DeliveryStatus.DELIVERED: OrderStatus.DELIVERED,
}

# Courier webhook vocabularies, keyed by provider_type
COURIER_STATUS_MAPS = {
    "g4s": {
        "created": DeliveryStatus.PENDING,
        "pending": DeliveryStatus.PENDING,
        "pickup_scheduled": DeliveryStatus.PICKUP_SCHEDULED,
        "picked_up": DeliveryStatus.PICKED_UP,
        "in_transit": DeliveryStatus.IN_TRANSIT,
        "out_for_delivery": DeliveryStatus.OUT_FOR_DELIVERY,
        "delivered": DeliveryStatus.DELIVERED,
        "failed": DeliveryStatus.FAILED,
        "cancelled": DeliveryStatus.CANCELLED,
    },
    "fargo_courier": {
        "booked": DeliveryStatus.PENDING,
        "pickup_arranged": DeliveryStatus.PICKUP_SCHEDULED,
        "collected": DeliveryStatus.PICKED_UP,
        "in_warehouse": DeliveryStatus.IN_TRANSIT,
        "out_for_delivery": DeliveryStatus.OUT_FOR_DELIVERY,
        "to deliver": DeliveryStatus.OUT_FOR_DELIVERY,
        "delivered": DeliveryStatus.DELIVERED,
        "delivery_failed": DeliveryStatus.FAILED,
        "cancelled": DeliveryStatus.CANCELLED,
    },
}

# Rough road distance from the Nairobi CBD when coordinates are unknown
AREA_DISTANCES_KM = (
    (("westlands", "karen", "runda"), 12.0),
    (("thika", "kiambu", "machakos"), 25.0),
    (("nakuru", "mombasa"), 150.0),
    (("cbd", "downtown", "city center"), 3.0),
    (("kasarani", "embakasi", "kahawa"), 8.0),
)
DEFAULT_DISTANCE_KM = 5.0
WEIGHT_STEP_KG = 5.0

DEFAULT_PROVIDERS = (
    {
        "slug": "fargo-courier",
        "name": "Fargo Courier",
        "provider_type": "fargo_courier",
        "notification_method": "sms",
        "contact_phone": "+254700000001",
        "base_rate": Decimal("200.00"),
        "distance_rate": Decimal("18.00"),
        "estimated_delivery_time": "Same day within Nairobi",
    },
    {
        "slug": "g4s",
        "name": "G4S Courier",
        "provider_type": "g4s",
        "notification_method": "email",
        "contact_email": "dispatch@g4s.example",
        "base_rate": Decimal("250.00"),
        "distance_rate": Decimal("20.00"),
        "estimated_delivery_time": "1-2 business days",
    },
)


@dataclass(frozen=True)
class CourierQuote:
    provider_id: int
    distance_km: float
    weight_multiplier: int
    total: Decimal
    estimated_time: str

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "distance_km": self.distance_km,
            "weight_multiplier": self.weight_multiplier,
            "total": f"{self.total:.2f}",
            "estimated_time": self.estimated_time,
        }


def normalize_courier_status(provider_type: str | None, raw_status: str | None) -> str:
    raw = (raw_status or "").strip().lower()
    mapping = COURIER_STATUS_MAPS.get((provider_type or "").strip().lower(), {})
    status = mapping.get(raw) or raw.replace(" ", "_")
    if status not in DeliveryStatus.ALL:
        raise ValidationError(f"unknown delivery status '{raw_status}'")
    return status


def estimate_distance_km(address: str | None) -> float:
    text = (address or "").strip().lower()
    for keywords, km in AREA_DISTANCES_KM:
        if any(k in text for k in keywords):
            return km
    return DEFAULT_DISTANCE_KM


def weight_multiplier(weight_kg) -> int:
    if weight_kg is None:
        return 1
    try:
        w = float(weight_kg)
    except (TypeError, ValueError):
        raise ValidationError("weight_kg must be a number")
    if w < 0 or not math.isfinite(w):
        raise ValidationError("weight_kg must be a non-negative number")
    return max(1, math.ceil(w / WEIGHT_STEP_KG))


def courier_total(base_rate, per_km_rate, distance_km: float, multiplier: int) -> Decimal:
    base = to_decimal(base_rate, field="base_rate")
    per_km = to_decimal(per_km_rate, field="distance_rate")
    raw = (base + per_km * Decimal(str(distance_km))) * Decimal(int(multiplier))
    return raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def _get_provider(provider_id) -> DeliveryProvider:
    key = str(provider_id or "").strip()
    if not key:
        raise ValidationError("provider_id is required")
    provider = None
    if key.isdigit():
        provider = db.session.get(DeliveryProvider, int(key))
    if provider is None:
        provider = DeliveryProvider.query.filter_by(slug=key.lower()).first()
    if provider is None:
        raise NotFound(f"delivery provider {key} not found")
    return provider


def _route_distance(order: Order | None, vendor: Vendor | None, address: str | None) -> float:
    origin = vendor.location() if vendor is not None else None
    dest = order.delivery_location() if order is not None else None
    if origin is not None and dest is not None:
        return geo_service.distance_km(origin, dest)
    return estimate_distance_km(address or (order.delivery_address if order is not None else None))


def calculate_courier_cost(
    provider_id,
    *,
    weight_kg=None,
    delivery_address: str | None = None,
    distance_km: float | None = None,
    order: Order | None = None,
) -> CourierQuote:
    provider = _get_provider(provider_id)
    if distance_km is None:
        vendor = db.session.get(Vendor, int(order.vendor_id)) if order is not None else None
        distance_km = _route_distance(order, vendor, delivery_address)
    elif float(distance_km) < 0:
        raise ValidationError("distance_km must not be negative")
    multiplier = weight_multiplier(weight_kg)
    total = courier_total(provider.base_rate, provider.distance_rate, float(distance_km), multiplier)
    return CourierQuote(
        provider_id=int(provider.id),
        distance_km=float(distance_km),
        weight_multiplier=multiplier,
        total=total,
        estimated_time=provider.estimated_delivery_time or "",
    )


def _courier_notification(
    provider: DeliveryProvider,
    delivery: Delivery,
    order: Order,
    vendor: Vendor | None,
    *,
    assignment_id: int = 0,
):
    """Queue the pickup request for ``provider``.

    ``assignment_id`` is the reassignment update id (0 for the first request),
    so handing a delivery back to an earlier courier notifies them again.
    """
    shop = vendor.business_name if vendor else "vendor"
    message = (
        f"BuyLock pickup: order {int(order.id):06d} from {shop}"
        f"{' (' + vendor.business_address + ')' if vendor and vendor.business_address else ''}"
        f" to {order.delivery_address or 'customer'}. Tracking {delivery.external_tracking_id or delivery.id}."
    )
    if (provider.notification_method or "sms") == "email":
        channel, recipient = CHANNEL_EMAIL, (provider.contact_email or "").strip()
    else:
        channel = CHANNEL_SMS
        recipient = (provider.contact_phone or os.getenv("COURIER_NOTIFY_PHONE") or "").strip()
    return queue_notification(
        "delivery.requested",
        channel=channel,
        recipient=recipient,
        title=f"Pickup request for order #{int(order.id):06d}" if channel == CHANNEL_EMAIL else None,
        message=message,
        subject_type="delivery",
        subject_id=int(delivery.id),
        dedupe_key=f"delivery.requested:delivery:{int(delivery.id)}:{int(assignment_id)}:{channel}:{recipient}",
    )


def create_delivery(
    order_id,
    provider_id,
    *,
    weight_kg=None,
    package_description: str | None = None,
    actor_role: str = "system",
    actor_id: int | None = None,
) -> Delivery:
    """Book a courier for a ready order. An order that already has a delivery returns it unchanged."""
    try:
        order = Order.query.with_for_update().filter_by(id=int(order_id)).first()
        if order is None:
            raise NotFound(f"order {order_id} not found")
        existing = Delivery.query.filter_by(order_id=int(order.id)).first()
        if existing is not None:
            db.session.rollback()
            return existing
        if order.status != OrderStatus.READY_FOR_PICKUP:
            raise InvalidTransition(
                "order",
                order.status,
                OrderStatus.AWAITING_DISPATCH,
                message=f"invalid status for this action: order must be ready_for_pickup, not {order.status}",
            )
        provider = _get_provider(provider_id)
        if not provider.is_active:
            raise ValidationError(f"delivery provider {provider.slug} is inactive")
        vendor = db.session.get(Vendor, int(order.vendor_id))
        quote = calculate_courier_cost(provider.id, weight_kg=weight_kg, order=order)
        now = datetime.utcnow()
        delivery = Delivery(
            order_id=int(order.id),
            provider_id=int(provider.id),
            status=DeliveryStatus.PENDING,
            pickup_address=vendor.business_address if vendor else None,
            delivery_address=order.delivery_address,
            delivery_fee=round2(quote.total),
            distance_km=quote.distance_km,
            weight_kg=float(weight_kg) if weight_kg is not None else None,
            package_description=(package_description or "")[:255] or None,
            estimated_pickup_time=now + timedelta(hours=2),
        )
        db.session.add(delivery)
        db.session.flush()
        delivery.external_tracking_id = f"BL-{int(order.id):06d}-{int(delivery.id)}"
        db.session.add(
            DeliveryUpdate(
                delivery_id=int(delivery.id),
                status=DeliveryStatus.PENDING,
                description=f"Delivery booked with {provider.name}",
                source="api",
            )
        )

        order.courier_id = provider.slug
        order.courier_name = provider.name
        order.tracking_number = delivery.external_tracking_id
        _tracking, notifications = apply_order_status(
            order,
            OrderStatus.AWAITING_DISPATCH,
            actor_role=actor_role,
            actor_id=actor_id,
            delivery_id=int(delivery.id),
        )
        row = _courier_notification(provider, delivery, order, vendor)
        if row is not None:
            notifications.append(row)
        db.session.commit()
    except IntegrityError:
        # Lost the race for the order's single delivery row.
        db.session.rollback()
        existing = Delivery.query.filter_by(order_id=int(order_id)).first()
        if existing is None:
            raise
        return existing
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "delivery_created delivery_id=%s order_id=%s provider=%s fee=%s distance_km=%s",
        delivery.id,
        order.id,
        provider.slug,
        delivery.delivery_fee,
        delivery.distance_km,
    )
    schedule_dispatch(notifications)
    return delivery


def _propagate_to_order(delivery: Delivery, status: str, *, source: str, location: str | None) -> list:
    target = ORDER_PROPAGATION.get(status)
    if target is None:
        return []
    order = Order.query.with_for_update().filter_by(id=int(delivery.order_id)).first()
    if order is None or order.status == target:
        return []
    if target not in OrderStatus.ALLOWED.get(order.status, set()):
        current_app.logger.info(
            "delivery_propagation_skipped delivery_id=%s order_id=%s order_status=%s target=%s",
            delivery.id,
            order.id,
            order.status,
            target,
        )
        return []
    _tracking, notifications = apply_order_status(
        order,
        target,
        actor_role="courier" if source == "webhook" else "system",
        delivery_id=int(delivery.id),
        location=location,
    )
    return notifications


def update_delivery_status(
    delivery_id,
    new_status: str,
    description: str | None = None,
    external_tracking_id: str | None = None,
    *,
    source: str = "manual",
    location: str | None = None,
    external_event_id: str | None = None,
) -> Delivery:
    status = (new_status or "").strip().lower()
    if status not in DeliveryStatus.ALL:
        raise ValidationError(f"unknown delivery status '{new_status}'")
    event_id = (external_event_id or "").strip()[:128] or None

    try:
        delivery = Delivery.query.with_for_update().filter_by(id=int(delivery_id)).first()
        if delivery is None:
            raise NotFound(f"delivery {delivery_id} not found")
        if event_id and DeliveryUpdate.query.filter_by(delivery_id=int(delivery.id), external_event_id=event_id).first():
            db.session.rollback()
            current_app.logger.info("delivery_update_duplicate delivery_id=%s event_id=%s", delivery_id, event_id)
            return delivery
        current = delivery.status
        if status != current and status not in DeliveryStatus.ALLOWED.get(current, set()):
            raise InvalidTransition("delivery", current, status)

        now = datetime.utcnow()
        delivery.status = status
        delivery.updated_at = now
        if external_tracking_id:
            delivery.external_tracking_id = external_tracking_id.strip()[:120]
        if status == DeliveryStatus.PICKED_UP:
            delivery.actual_pickup_time = now
        elif status == DeliveryStatus.DELIVERED:
            delivery.actual_delivery_time = now
        elif status == DeliveryStatus.FAILED:
            delivery.failure_reason = (description or "delivery failed").strip()

        db.session.add(
            DeliveryUpdate(
                delivery_id=int(delivery.id),
                status=status,
                kind="status",
                description=(description or "").strip() or f"Status updated to {status}",
                location=(location or "")[:120] or None,
                source=(source or "manual")[:16],
                external_event_id=event_id,
            )
        )
        notifications = []
        if status != current:
            notifications = _propagate_to_order(delivery, status, source=source, location=location)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if event_id is None:
            raise
        current_app.logger.info("delivery_update_duplicate delivery_id=%s event_id=%s", delivery_id, event_id)
        return db.session.get(Delivery, int(delivery_id))
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "delivery_status_updated delivery_id=%s from=%s to=%s source=%s", delivery.id, current, status, source
    )
    schedule_dispatch(notifications)
    return delivery


def reassign_delivery(delivery_id, new_provider_id, reason: str | None, actor_role: str, actor_id: int | None = None) -> Delivery:
    if (actor_role or "").strip().lower() != "admin":
        raise PermissionDenied("only an admin may reassign a delivery")
    try:
        delivery = Delivery.query.with_for_update().filter_by(id=int(delivery_id)).first()
        if delivery is None:
            raise NotFound(f"delivery {delivery_id} not found")
        if delivery.status == DeliveryStatus.DELIVERED:
            raise InvalidTransition(
                "delivery",
                delivery.status,
                DeliveryStatus.PENDING,
                message="invalid status for this action: delivery already delivered",
            )
        provider = _get_provider(new_provider_id)
        previous = delivery.provider
        delivery.provider_id = int(provider.id)
        delivery.provider = provider
        delivery.status = DeliveryStatus.PENDING
        delivery.failure_reason = None
        delivery.updated_at = datetime.utcnow()
        note = (reason or "").strip()
        update = DeliveryUpdate(
            delivery_id=int(delivery.id),
            status=DeliveryStatus.PENDING,
            kind="reassigned",
            description=f"Reassigned from {previous.name if previous else 'unknown'} to {provider.name}"
            + (f": {note}" if note else ""),
            source="manual",
        )
        db.session.add(update)
        db.session.flush()
        order = Order.query.with_for_update().filter_by(id=int(delivery.order_id)).first()
        vendor = None
        if order is not None:
            order.courier_id = provider.slug
            order.courier_name = provider.name
            vendor = db.session.get(Vendor, int(order.vendor_id))
        notifications = []
        if order is not None:
            row = _courier_notification(provider, delivery, order, vendor, assignment_id=int(update.id))
            if row is not None:
                notifications.append(row)
        log_event(
            "delivery.reassigned",
            actor_user_id=actor_id,
            actor_role="admin",
            subject_type="delivery",
            subject_id=int(delivery.id),
            metadata={"from": previous.slug if previous else None, "to": provider.slug, "reason": note},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("delivery_reassigned delivery_id=%s provider=%s", delivery.id, provider.slug)
    schedule_dispatch(notifications)
    return delivery


def delivery_history(delivery_id) -> list[DeliveryUpdate]:
    return (
        DeliveryUpdate.query.filter_by(delivery_id=int(delivery_id))
        .order_by(DeliveryUpdate.created_at.asc(), DeliveryUpdate.id.asc())
        .all()
    )


def list_providers(*, active_only: bool = True) -> list[DeliveryProvider]:
    q = DeliveryProvider.query
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(DeliveryProvider.name.asc()).all()


def seed_delivery_providers() -> int:
    created = 0
    for entry in DEFAULT_PROVIDERS:
        if DeliveryProvider.query.filter_by(slug=entry["slug"]).first() is not None:
            continue
        db.session.add(DeliveryProvider(**entry))
        created += 1
    db.session.commit()
    return created


def handle_courier_webhook(provider_id, payload: dict) -> Delivery:
    """Apply a courier callback. The payload carries the tracking id, a raw status and an optional event id."""
    provider = _get_provider(provider_id)
    data = payload or {}
    tracking = str(data.get("tracking_id") or data.get("tracking_number") or data.get("waybill") or "").strip()
    if not tracking:
        raise ValidationError("tracking_id is required")
    delivery = Delivery.query.filter_by(external_tracking_id=tracking, provider_id=int(provider.id)).first()
    if delivery is None:
        raise NotFound(f"delivery with tracking id {tracking} not found")
    status = normalize_courier_status(provider.provider_type, data.get("status"))
    return update_delivery_status(
        delivery.id,
        status,
        description=data.get("description") or data.get("message"),
        source="webhook",
        location=data.get("location"),
        external_event_id=str(data.get("event_id") or data.get("id") or "").strip() or None,
    )
