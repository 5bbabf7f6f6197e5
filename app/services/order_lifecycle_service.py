from __future__ import annotations

import os
import secrets
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.errors import InvalidTransition, MarketplaceError, NotFound, PermissionDenied, ValidationError
from app.extensions import db
from app.models import Appointment, Order, OrderItem, OrderTracking, User, Vendor, VendorEarning
from app.services.commission_service import calculate_commission
from app.services.notification_service import CHANNEL_EMAIL, CHANNEL_SMS, queue_notification, schedule_dispatch
from app.utils.events import log_event
from app.utils.money import ZERO, as_money, round2, to_decimal
from app.utils.platform_settings import get_setting


class OrderStatus:
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    CONFIRMED = "confirmed"
    READY_FOR_PICKUP = "ready_for_pickup"
    AWAITING_DISPATCH = "awaiting_dispatch"
    DISPATCHED = "dispatched"
    IN_DELIVERY = "in_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CUSTOMER_CONFIRMED = "customer_confirmed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"

    # Service orders mirror the vendor task status
    PENDING_ACCEPTANCE = "pending_acceptance"
    ACCEPTED = "accepted"
    STARTING_JOB = "starting_job"
    IN_PROGRESS = "in_progress"
    DELAYED = "delayed"
    ALMOST_DONE = "almost_done"
    DECLINED = "declined"

    TERMINAL = {CUSTOMER_CONFIRMED, DISPUTED, CANCELLED, DECLINED}
    CANCELLABLE = {PAID, CONFIRMED, READY_FOR_PICKUP, PENDING_ACCEPTANCE, ACCEPTED}
    EARNING = {DELIVERED, COMPLETED}

    ALLOWED = {
        PENDING_PAYMENT: {PAID},
        PAID: {CONFIRMED, PENDING_ACCEPTANCE, ACCEPTED, DECLINED, CANCELLED},
        CONFIRMED: {READY_FOR_PICKUP, COMPLETED, CANCELLED},
        READY_FOR_PICKUP: {AWAITING_DISPATCH, DISPATCHED, CANCELLED},
        AWAITING_DISPATCH: {DISPATCHED, IN_DELIVERY, DELIVERED},
        DISPATCHED: {IN_DELIVERY, DELIVERED},
        IN_DELIVERY: {DELIVERED},
        DELIVERED: {COMPLETED, CUSTOMER_CONFIRMED, DISPUTED},
        COMPLETED: {CUSTOMER_CONFIRMED, DISPUTED},
        PENDING_ACCEPTANCE: {ACCEPTED, DECLINED, CANCELLED},
        ACCEPTED: {STARTING_JOB, IN_PROGRESS, CANCELLED},
        STARTING_JOB: {IN_PROGRESS, DELAYED, ALMOST_DONE},
        IN_PROGRESS: {DELAYED, ALMOST_DONE, COMPLETED},
        DELAYED: {IN_PROGRESS, ALMOST_DONE, COMPLETED},
        ALMOST_DONE: {DELAYED, COMPLETED},
        CUSTOMER_CONFIRMED: set(),
        DISPUTED: set(),
        CANCELLED: set(),
        DECLINED: set(),
    }
    ALL = set(ALLOWED.keys())


class AppointmentStatus:
    PENDING_ACCEPTANCE = "pending_acceptance"
    ACCEPTED = "accepted"
    STARTING_JOB = "starting_job"
    IN_PROGRESS = "in_progress"
    DELAYED = "delayed"
    ALMOST_DONE = "almost_done"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"

    ALLOWED = {
        PENDING_ACCEPTANCE: {ACCEPTED, DECLINED, CANCELLED},
        ACCEPTED: {STARTING_JOB, IN_PROGRESS, CANCELLED},
        STARTING_JOB: {IN_PROGRESS, DELAYED, ALMOST_DONE},
        IN_PROGRESS: {DELAYED, ALMOST_DONE, COMPLETED},
        DELAYED: {IN_PROGRESS, ALMOST_DONE, COMPLETED},
        ALMOST_DONE: {DELAYED, COMPLETED},
        COMPLETED: set(),
        CANCELLED: set(),
        DECLINED: set(),
    }
    ALL = set(ALLOWED.keys())


# Vendor task status -> order status shown to the customer.
TASK_TO_ORDER_STATUS = {
    AppointmentStatus.PENDING_ACCEPTANCE: OrderStatus.PENDING_ACCEPTANCE,
    AppointmentStatus.ACCEPTED: OrderStatus.ACCEPTED,
    AppointmentStatus.STARTING_JOB: OrderStatus.STARTING_JOB,
    AppointmentStatus.IN_PROGRESS: OrderStatus.IN_PROGRESS,
    AppointmentStatus.DELAYED: OrderStatus.DELAYED,
    AppointmentStatus.ALMOST_DONE: OrderStatus.ALMOST_DONE,
    AppointmentStatus.COMPLETED: OrderStatus.COMPLETED,
    AppointmentStatus.CANCELLED: OrderStatus.CANCELLED,
    AppointmentStatus.DECLINED: OrderStatus.DECLINED,
}
ORDER_TO_TASK_STATUS = {v: k for k, v in TASK_TO_ORDER_STATUS.items()}


# status -> (tracking label, description template, location)
TRACKING_COPY = {
    OrderStatus.PENDING_PAYMENT: ("Pending Payment", "Order created and awaiting payment", "Online"),
    OrderStatus.PAID: ("Paid", "Payment received for the order", "Online"),
    OrderStatus.CONFIRMED: ("Confirmed", "Order confirmed by vendor and ready for dispatch", "Vendor Location"),
    OrderStatus.READY_FOR_PICKUP: ("Ready for Pickup", "Order packed and ready for courier pickup", "Vendor Location"),
    OrderStatus.AWAITING_DISPATCH: ("Awaiting Dispatch", "Order assigned to {courier} for delivery", "Processing Center"),
    OrderStatus.DISPATCHED: ("Dispatched", "Order picked up by {courier}", "Vendor Location"),
    OrderStatus.IN_DELIVERY: ("In Delivery", "Order is out for delivery", "En Route"),
    OrderStatus.DELIVERED: ("Delivered", "Order has been successfully delivered", "Customer Address"),
    OrderStatus.COMPLETED: ("Completed", "Order marked as completed by vendor", "Vendor Location"),
    OrderStatus.CUSTOMER_CONFIRMED: ("Customer Confirmed", "Customer confirmed receipt of the order", "Customer Address"),
    OrderStatus.DISPUTED: ("Disputed", "Customer reported an issue: {reason}", "Customer Service"),
    OrderStatus.CANCELLED: ("Cancelled", "Order has been cancelled by {role} request.", "Customer Service"),
    OrderStatus.PENDING_ACCEPTANCE: ("Pending Acceptance", "Booking is awaiting vendor acceptance", "Vendor Location"),
    OrderStatus.ACCEPTED: ("Accepted", "Booking accepted by vendor", "Vendor Location"),
    OrderStatus.STARTING_JOB: ("Starting Job", "Vendor is on the way to start the job", "Service Location"),
    OrderStatus.IN_PROGRESS: ("In Progress", "Service is in progress", "Service Location"),
    OrderStatus.DELAYED: ("Delayed", "Service has been delayed", "Service Location"),
    OrderStatus.ALMOST_DONE: ("Almost Done", "Service is almost done", "Service Location"),
    OrderStatus.DECLINED: ("Declined", "Booking declined by vendor", "Vendor Location"),
}

ACTIONS = ("accept", "ready", "dispatch", "mark_delivered", "complete", "confirm", "dispute", "cancel")

ACTION_ROLES = {
    "accept": {"vendor", "admin"},
    "ready": {"vendor", "admin"},
    "dispatch": {"system", "admin"},
    "mark_delivered": {"system", "admin", "courier"},
    "complete": {"vendor", "admin"},
    "confirm": {"buyer", "admin"},
    "dispute": {"buyer", "admin"},
    "cancel": {"vendor", "buyer", "admin"},
}

_ROLE_SOURCE = {
    "vendor": "vendor",
    "buyer": "buyer",
    "admin": "admin",
    "courier": "courier",
    "system": "system",
}


def _normalize_status(value: str | None) -> str:
    return (value or "").strip().lower()


def _lock_order(order_id) -> Order:
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise ValidationError("order_id must be an integer")
    order = Order.query.with_for_update().filter_by(id=oid).first()
    if order is None:
        raise NotFound(f"order {oid} not found")
    return order


def _lock_vendor(vendor_id) -> Vendor:
    vendor = Vendor.query.with_for_update().filter_by(id=int(vendor_id)).first()
    if vendor is None:
        raise NotFound(f"vendor {vendor_id} not found")
    return vendor


def target_for_action(order: Order, action: str) -> str:
    act = (action or "").strip().lower()
    current = _normalize_status(order.status)
    if act == "accept":
        return OrderStatus.CONFIRMED
    if act == "ready":
        return OrderStatus.READY_FOR_PICKUP
    if act == "dispatch":
        if current == OrderStatus.READY_FOR_PICKUP:
            return OrderStatus.AWAITING_DISPATCH
        return OrderStatus.DISPATCHED
    if act == "mark_delivered":
        return OrderStatus.DELIVERED
    if act == "complete":
        return OrderStatus.COMPLETED
    if act == "confirm":
        return OrderStatus.CUSTOMER_CONFIRMED
    if act == "dispute":
        return OrderStatus.DISPUTED
    if act == "cancel":
        return OrderStatus.CANCELLED
    raise ValidationError(f"unknown action '{action}'; expected one of {', '.join(ACTIONS)}")


def _check_transition(order: Order, target: str) -> str:
    current = _normalize_status(order.status)
    if target == OrderStatus.CANCELLED and current not in OrderStatus.CANCELLABLE:
        raise InvalidTransition(
            "order",
            current,
            target,
            message=f"invalid status for this action: cannot cancel order with status {current}",
        )
    allowed = OrderStatus.ALLOWED.get(current, set())
    if target not in allowed:
        raise InvalidTransition("order", current, target)
    return current


def _buyer_email(order: Order) -> str | None:
    buyer = db.session.get(User, int(order.buyer_id))
    return (buyer.email or "").strip() if buyer else None


def _vendor_for(order: Order) -> Vendor | None:
    return db.session.get(Vendor, int(order.vendor_id))


def confirmation_link(order: Order) -> str:
    base = (os.getenv("PUBLIC_BASE_URL") or "http://localhost:5000").strip().rstrip("/")
    return f"{base}/orders/confirm/{order.confirmation_token}"


def _short_id(order: Order) -> str:
    return f"{int(order.id):06d}"


def _order_notifications(order: Order, status: str, ctx: dict) -> list:
    vendor = _vendor_for(order)
    subject = {"subject_type": "order", "subject_id": int(order.id)}
    rows = []
    if status == OrderStatus.CONFIRMED:
        rows.append(queue_notification(
            "order.confirmed",
            channel=CHANNEL_EMAIL,
            recipient=_buyer_email(order),
            title=f"Your order #{_short_id(order)} has been accepted",
            message=f"{vendor.business_name if vendor else 'The vendor'} accepted your order and is preparing it.",
            **subject,
        ))
    elif status == OrderStatus.READY_FOR_PICKUP:
        courier_phone = (os.getenv("COURIER_NOTIFY_PHONE") or get_setting("courier_notify_phone") or "").strip()
        rows.append(queue_notification(
            "order.ready_for_pickup",
            channel=CHANNEL_SMS,
            recipient=courier_phone,
            message=(
                f"BuyLock Ready! Order: {_short_id(order)} Pickup ready from "
                f"{vendor.business_name if vendor else 'vendor'}"
                f"{' Phone: ' + vendor.phone if vendor and vendor.phone else ''}"
            ),
            **subject,
        ))
    elif status in (OrderStatus.DELIVERED, OrderStatus.COMPLETED):
        rows.append(queue_notification(
            f"order.{status}",
            channel=CHANNEL_EMAIL,
            recipient=_buyer_email(order),
            title=f"Confirm your BuyLock order #{_short_id(order)}",
            message=(
                "Your order has been marked as received. Confirm delivery or report an issue here:\n"
                f"{confirmation_link(order)}"
            ),
            **subject,
        ))
    elif status == OrderStatus.CUSTOMER_CONFIRMED:
        rows.append(queue_notification(
            "order.customer_confirmed",
            channel=CHANNEL_SMS,
            recipient=vendor.phone if vendor else None,
            message=f"BuyLock: order {_short_id(order)} confirmed by customer. Earnings are now available for payout.",
            **subject,
        ))
    elif status == OrderStatus.DISPUTED:
        rows.append(queue_notification(
            "order.disputed",
            channel=CHANNEL_EMAIL,
            recipient=(os.getenv("ADMIN_NOTIFY_EMAIL") or "").strip(),
            title=f"Order #{_short_id(order)} disputed",
            message=f"Customer disputed order {order.id}. Reason: {ctx.get('reason') or '-'}",
            **subject,
        ))
    elif status in (OrderStatus.CANCELLED, OrderStatus.DECLINED):
        rows.append(queue_notification(
            f"order.{status}",
            channel=CHANNEL_EMAIL,
            recipient=_buyer_email(order),
            title=f"Order #{_short_id(order)} {status}",
            message=f"Your order #{_short_id(order)} has been {status}.",
            **subject,
        ))
        rows.append(queue_notification(
            f"order.{status}",
            channel=CHANNEL_SMS,
            recipient=vendor.phone if vendor else None,
            message=f"BuyLock: order {_short_id(order)} has been {status}.",
            **subject,
        ))
    elif status == OrderStatus.ACCEPTED:
        rows.append(queue_notification(
            "order.accepted",
            channel=CHANNEL_EMAIL,
            recipient=_buyer_email(order),
            title="Your booking has been accepted",
            message=f"Your booking #{_short_id(order)} was accepted by the vendor.",
            **subject,
        ))
    return [r for r in rows if r is not None]


def post_earnings(order: Order) -> list[VendorEarning]:
    """Recognize one pending VendorEarning per item, snapshotting today's rate. Idempotent per item."""
    posted = []
    for item in order.items or []:
        existing = VendorEarning.query.filter_by(order_item_id=int(item.id)).first()
        if existing is not None:
            continue
        split = calculate_commission(item.line_total())
        earning = VendorEarning(
            vendor_id=int(order.vendor_id),
            order_id=int(order.id),
            order_item_id=int(item.id),
            gross_amount=split.gross_amount,
            platform_fee_percentage=split.percentage,
            platform_fee=split.platform_fee,
            net_earnings=split.net_earnings,
            status="pending",
            earning_date=datetime.utcnow(),
        )
        db.session.add(earning)
        posted.append(earning)
    if posted:
        db.session.flush()
    return posted


def release_earnings(order: Order) -> Decimal:
    """Make the order's pending earnings withdrawable and credit the vendor balances."""
    post_earnings(order)
    vendor = _lock_vendor(order.vendor_id)
    now = datetime.utcnow()
    released = ZERO
    for earning in VendorEarning.query.filter_by(order_id=int(order.id), status="pending").all():
        earning.status = "available"
        earning.available_date = now
        released += as_money(earning.net_earnings)
    if released > 0:
        vendor.total_earnings = as_money(vendor.total_earnings) + released
        vendor.available_balance = as_money(vendor.available_balance) + released
    return released


def _sync_appointment(order: Order, status: str) -> None:
    if (order.order_type or "") != "service":
        return
    task_status = ORDER_TO_TASK_STATUS.get(status)
    if task_status is None:
        return
    appt = Appointment.query.filter_by(order_id=int(order.id)).first()
    if appt is None or appt.status == task_status:
        return
    if task_status in AppointmentStatus.ALLOWED.get(appt.status, set()):
        appt.status = task_status


def apply_order_status(
    order: Order,
    target: str,
    *,
    actor_role: str = "system",
    actor_id: int | None = None,
    reason: str | None = None,
    notes: str | None = None,
    delivery_id: int | None = None,
    description: str | None = None,
    location: str | None = None,
) -> tuple[OrderTracking, list]:
    """Move ``order`` to ``target`` inside the caller's transaction.

    Writes the status, its timestamp fields, exactly one tracking row and the
    outbox notifications. Raises InvalidTransition without touching the order
    when the move is not allowed. The caller commits.
    """
    target = _normalize_status(target)
    current = _check_transition(order, target)
    now = datetime.utcnow()
    role = (actor_role or "system").strip().lower()

    if target == OrderStatus.DISPUTED:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("a reason is required to dispute an order")

    if target == OrderStatus.CONFIRMED:
        order.vendor_accepted_at = now
        if notes:
            order.vendor_notes = notes
    elif target == OrderStatus.DISPATCHED:
        order.delivery_pickup_at = now
    elif target == OrderStatus.DELIVERED:
        order.delivered_at = now
    elif target == OrderStatus.CUSTOMER_CONFIRMED:
        order.customer_confirmed_at = now
    elif target == OrderStatus.DISPUTED:
        order.dispute_reason = reason
    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = now
        if notes:
            order.notes = notes
    elif target == OrderStatus.PAID:
        order.payment_status = "completed"

    order.status = target
    order.updated_at = now

    if target in OrderStatus.EARNING:
        post_earnings(order)
    if target == OrderStatus.CUSTOMER_CONFIRMED:
        release_earnings(order)
    _sync_appointment(order, target)

    label, template, default_location = TRACKING_COPY[target]
    ctx = {
        "courier": order.courier_name or "courier",
        "reason": reason or "",
        "role": "customer" if role == "buyer" else role,
    }
    tracking = OrderTracking(
        order_id=int(order.id),
        delivery_id=delivery_id,
        status=label,
        description=(description or template.format(**ctx)).strip() or label,
        location=location or default_location,
        is_delivered=target == OrderStatus.DELIVERED,
        source=_ROLE_SOURCE.get(role, "system"),
        created_at=now,
    )
    db.session.add(tracking)
    notifications = _order_notifications(order, target, ctx)
    log_event(
        "order.transition",
        actor_user_id=actor_id,
        actor_role=role,
        subject_type="order",
        subject_id=int(order.id),
        metadata={"from": current, "to": target, "reason": reason or ""},
    )
    return tracking, notifications


def _auto_dispatch(order_id: int) -> None:
    provider_id = (os.getenv("DEFAULT_DELIVERY_PROVIDER_ID") or get_setting("default_delivery_provider_id") or "").strip()
    if not provider_id:
        return
    from app.services.delivery_service import create_delivery

    try:
        create_delivery(int(order_id), provider_id)
    except (MarketplaceError, SQLAlchemyError) as e:
        db.session.rollback()
        current_app.logger.warning("auto_dispatch_failed order_id=%s provider_id=%s err=%s", order_id, provider_id, e)


def transition_order(
    order_id,
    action: str,
    actor_role: str,
    payload: dict | None = None,
    *,
    actor_id: int | None = None,
) -> Order:
    payload = payload or {}
    act = (action or "").strip().lower()
    role = (actor_role or "").strip().lower()
    if act not in ACTION_ROLES:
        raise ValidationError(f"unknown action '{action}'; expected one of {', '.join(ACTIONS)}")
    if role not in ACTION_ROLES[act]:
        raise PermissionDenied(f"role '{role or 'guest'}' may not perform '{act}'")

    try:
        order = _lock_order(order_id)
        target = target_for_action(order, act)
        # Terminal targets fall through to the transition check and raise.
        if _normalize_status(order.status) == target and target not in OrderStatus.TERMINAL:
            db.session.rollback()
            current_app.logger.info("order_transition_noop order_id=%s status=%s action=%s", order.id, target, act)
            return order
        _tracking, notifications = apply_order_status(
            order,
            target,
            actor_role=role,
            actor_id=actor_id,
            reason=payload.get("reason"),
            notes=payload.get("notes") or payload.get("vendor_notes"),
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "order_transition order_id=%s action=%s to=%s actor_role=%s actor_id=%s",
        order.id,
        act,
        target,
        role,
        actor_id,
    )
    schedule_dispatch(notifications)
    if target == OrderStatus.READY_FOR_PICKUP:
        _auto_dispatch(int(order.id))
    return order


def _parse_items(items) -> list[dict]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("items must be a non-empty list")
    parsed = []
    for idx, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        product_id = raw.get("product_id")
        service_id = raw.get("service_id")
        if (product_id is None) == (service_id is None):
            raise ValidationError(f"items[{idx}] needs exactly one of product_id or service_id")
        try:
            quantity = int(raw.get("quantity", 1))
        except (TypeError, ValueError):
            raise ValidationError(f"items[{idx}].quantity must be an integer")
        if quantity < 1:
            raise ValidationError(f"items[{idx}].quantity must be at least 1")
        price = to_decimal(raw.get("price"), field=f"items[{idx}].price")
        if price < 0:
            raise ValidationError(f"items[{idx}].price must not be negative")
        try:
            duration = int(raw.get("duration") or 1)
        except (TypeError, ValueError):
            raise ValidationError(f"items[{idx}].duration must be an integer")
        parsed.append(
            {
                "product_id": int(product_id) if product_id is not None else None,
                "service_id": int(service_id) if service_id is not None else None,
                "name": str(raw.get("name") or "")[:200],
                "quantity": quantity,
                "price": round2(price),
                "appointment_date": raw.get("appointment_date"),
                "appointment_time": raw.get("appointment_time"),
                "duration": max(1, duration),
                "service_location": raw.get("service_location"),
                "notes": raw.get("notes"),
            }
        )
    return parsed


def _optional_float(value, field: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")


def create_order_from_payment(payment_reference: str, buyer_id, items, metadata: dict | None = None) -> tuple[Order, bool]:
    """Create the order for a verified payment. Returns ``(order, created)``.

    A second call with the same payment reference returns the existing order
    with ``created=False``; the unique constraint on ``payment_reference``
    settles concurrent deliveries of the same payment.
    """
    meta = metadata or {}
    ref = (payment_reference or "").strip()
    if not ref:
        raise ValidationError("payment_reference is required")
    lines = _parse_items(items)

    try:
        buyer_pk = int(buyer_id)
        vendor_pk = int(meta.get("vendor_id"))
    except (TypeError, ValueError):
        raise ValidationError("buyer_id and metadata.vendor_id must be integers")
    if db.session.get(User, buyer_pk) is None:
        raise NotFound(f"buyer {buyer_pk} not found")
    vendor = db.session.get(Vendor, vendor_pk)
    if vendor is None:
        raise NotFound(f"vendor {vendor_pk} not found")

    order_type = (meta.get("order_type") or "").strip().lower()
    if not order_type:
        order_type = "service" if any(line["service_id"] is not None for line in lines) else "product"
    if order_type not in ("product", "service"):
        raise ValidationError("order_type must be product or service")

    delivery_fee = round2(to_decimal(meta.get("delivery_fee") or 0, field="delivery_fee"))
    if delivery_fee < 0:
        raise ValidationError("delivery_fee must not be negative")
    subtotal = sum((line["price"] * line["quantity"] for line in lines), ZERO)
    total = round2(subtotal + delivery_fee)
    if total <= 0:
        raise ValidationError("order total must be positive")
    if meta.get("amount_paid") is not None:
        paid = round2(to_decimal(meta.get("amount_paid"), field="amount_paid"))
        if paid < total:
            raise ValidationError(f"amount paid {paid} does not cover order total {total}")

    payment_status = (meta.get("payment_status") or "completed").strip().lower()
    status = OrderStatus.PAID if payment_status == "completed" else OrderStatus.PENDING_PAYMENT

    order = Order(
        buyer_id=buyer_pk,
        vendor_id=vendor_pk,
        status=status,
        order_type=order_type,
        total_amount=total,
        delivery_fee=delivery_fee,
        delivery_address=meta.get("delivery_address"),
        service_location=meta.get("service_location"),
        delivery_latitude=_optional_float(meta.get("delivery_latitude"), "delivery_latitude"),
        delivery_longitude=_optional_float(meta.get("delivery_longitude"), "delivery_longitude"),
        payment_status=payment_status,
        payment_method=meta.get("payment_method") or "paystack",
        payment_reference=ref[:128],
        confirmation_token=secrets.token_urlsafe(32),
        notes=meta.get("notes"),
    )
    db.session.add(order)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        existing = Order.query.filter_by(payment_reference=ref[:128]).first()
        if existing is None:
            raise
        current_app.logger.info("order_create_replayed payment_reference=%s order_id=%s", ref, existing.id)
        return existing, False

    try:
        for line in lines:
            db.session.add(OrderItem(order_id=int(order.id), **line))
        label, template, location = TRACKING_COPY[status]
        db.session.add(
            OrderTracking(
                order_id=int(order.id),
                status="Order Placed" if status == OrderStatus.PAID else label,
                description="Order placed and payment confirmed" if status == OrderStatus.PAID else template,
                location=location,
                source="system",
            )
        )
        if order_type == "service":
            first = lines[0]
            db.session.add(
                Appointment(
                    order_id=int(order.id),
                    vendor_id=vendor_pk,
                    buyer_id=buyer_pk,
                    service_id=first["service_id"],
                    service_name=first["name"],
                    appointment_date=first["appointment_date"],
                    appointment_time=first["appointment_time"],
                    address=first["service_location"] or meta.get("service_location"),
                    status=AppointmentStatus.PENDING_ACCEPTANCE,
                )
            )
        notifications = []
        if status == OrderStatus.PAID:
            row = queue_notification(
                "order.placed",
                channel=CHANNEL_SMS,
                recipient=vendor.phone,
                message=f"New BuyLock Order! ID: {_short_id(order)} Total: KES {total:.2f}",
                subject_type="order",
                subject_id=int(order.id),
            )
            if row is not None:
                notifications.append(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "order_created order_id=%s payment_reference=%s vendor_id=%s total=%s type=%s",
        order.id,
        ref,
        vendor_pk,
        total,
        order_type,
    )
    schedule_dispatch(notifications)
    return order, True


def update_task_status(appointment_id, status: str, *, vendor_notes: str | None = None, actor_role: str = "vendor", actor_id: int | None = None) -> Appointment:
    """Move a vendor task and mirror it onto the parent order in one transaction."""
    target = _normalize_status(status)
    if target not in AppointmentStatus.ALL:
        raise ValidationError(f"invalid task status '{status}'")
    role = (actor_role or "").strip().lower()
    if role not in ("vendor", "admin"):
        raise PermissionDenied("only the vendor or an admin may update a task")

    notifications = []
    try:
        appt = Appointment.query.with_for_update().filter_by(id=int(appointment_id)).first()
        if appt is None:
            raise NotFound(f"appointment {appointment_id} not found")
        if appt.status != target:
            if target not in AppointmentStatus.ALLOWED.get(appt.status, set()):
                raise InvalidTransition("appointment", appt.status, target)
            order = _lock_order(appt.order_id)
            order_target = TASK_TO_ORDER_STATUS[target]
            appt.status = target
            if _normalize_status(order.status) != order_target:
                _tracking, notifications = apply_order_status(
                    order,
                    order_target,
                    actor_role=role,
                    actor_id=actor_id,
                    description=f"Task status updated to {target}",
                )
        if vendor_notes is not None:
            appt.vendor_notes = vendor_notes
        appt.updated_at = datetime.utcnow()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    schedule_dispatch(notifications)
    return appt


def find_by_confirmation_token(token: str) -> Order:
    tok = (token or "").strip()
    order = Order.query.filter_by(confirmation_token=tok).first() if len(tok) >= 10 else None
    if order is None:
        raise NotFound("Order not found or confirmation link expired")
    return order


def confirm_by_token(token: str, action: str, reason: str | None = None) -> Order:
    order = find_by_confirmation_token(token)
    act = (action or "").strip().lower()
    if act not in ("confirm", "dispute"):
        raise ValidationError("action must be confirm or dispute")
    return transition_order(order.id, act, "buyer", {"reason": reason}, actor_id=int(order.buyer_id))


def get_tracking(order_id) -> list[OrderTracking]:
    return (
        OrderTracking.query.filter_by(order_id=int(order_id))
        .order_by(OrderTracking.created_at.asc(), OrderTracking.id.asc())
        .all()
    )


def order_summary(order: Order) -> dict:
    vendor = _vendor_for(order)
    return {
        "id": int(order.id),
        "status": order.status,
        "order_type": order.order_type or "product",
        "total_amount": f"{as_money(order.total_amount):.2f}",
        "delivery_fee": f"{as_money(order.delivery_fee):.2f}",
        "delivery_address": order.delivery_address or "",
        "vendor_name": vendor.business_name if vendor else "",
        "courier_name": order.courier_name or "",
        "tracking_number": order.tracking_number or "",
        "vendor_accepted_at": order.vendor_accepted_at.isoformat() if order.vendor_accepted_at else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "items": [
            {
                "id": int(item.id),
                "name": item.name or "",
                "quantity": int(item.quantity or 0),
                "price": f"{as_money(item.price):.2f}",
                "appointment_date": item.appointment_date,
                "appointment_time": item.appointment_time,
                "duration": int(item.duration or 1),
            }
            for item in order.items or []
        ],
    }
