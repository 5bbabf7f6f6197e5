from __future__ import annotations

import os
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from app.errors import (
    ExternalServiceError,
    InsufficientBalance,
    InvalidTransition,
    MissingBankDetails,
    NotFound,
    ValidationError,
)
from app.extensions import db
from app.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from app.integrations.payments.factory import build_payments_provider
from app.models import PayoutRequest, Vendor, VendorEarning
from app.services.notification_service import CHANNEL_EMAIL, CHANNEL_SMS, queue_notification, schedule_dispatch
from app.utils.events import log_event
from app.utils.money import ZERO, as_money, money_major_to_minor, round2, to_decimal
from app.utils.platform_settings import get_integration_settings


class PayoutStatus:
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"

    # Requests whose amount is still held in the vendor's pending balance
    HELD = {PENDING, APPROVED, PROCESSING}
    TERMINAL = {COMPLETED, REJECTED, FAILED}

    ALLOWED = {
        PENDING: {APPROVED, REJECTED},
        APPROVED: {PROCESSING, COMPLETED, FAILED},
        PROCESSING: {COMPLETED, FAILED},
        COMPLETED: set(),
        REJECTED: set(),
        FAILED: set(),
    }


def _currency() -> str:
    return (os.getenv("PAYOUT_CURRENCY") or "KES").strip().upper()


def _lock_vendor(vendor_id) -> Vendor:
    vendor = Vendor.query.with_for_update().filter_by(id=int(vendor_id)).first()
    if vendor is None:
        raise NotFound(f"vendor {vendor_id} not found")
    return vendor


def _lock_request(request_id) -> PayoutRequest:
    try:
        rid = int(request_id)
    except (TypeError, ValueError):
        raise ValidationError("payout request id must be an integer")
    req = PayoutRequest.query.with_for_update().filter_by(id=rid).first()
    if req is None:
        raise NotFound(f"payout request {rid} not found")
    return req


def _set_status(req: PayoutRequest, target: str) -> None:
    current = (req.status or "").strip().lower()
    if target not in PayoutStatus.ALLOWED.get(current, set()):
        raise InvalidTransition("payout_request", current, target)
    req.status = target
    req.updated_at = datetime.utcnow()


def _release_hold(vendor: Vendor, amount: Decimal) -> None:
    """pending -> available for a request that will not be paid."""
    vendor.pending_balance = as_money(vendor.pending_balance) - amount
    vendor.available_balance = as_money(vendor.available_balance) + amount


def _vendor_sms(vendor: Vendor, req: PayoutRequest, event_type: str, message: str):
    return queue_notification(
        event_type,
        channel=CHANNEL_SMS,
        recipient=vendor.phone,
        message=message,
        subject_type="payout_request",
        subject_id=int(req.id),
    )


def request_payout(vendor_id, amount, reason: str | None = None) -> PayoutRequest:
    value = round2(to_decimal(amount, field="amount"))
    if value <= 0:
        raise ValidationError("amount must be greater than zero")

    try:
        vendor = _lock_vendor(vendor_id)
        if not vendor.has_payout_account():
            raise MissingBankDetails("bank details missing: add a bank or mobile money account before requesting a payout")
        available = as_money(vendor.available_balance)
        if value > available:
            raise InsufficientBalance(
                f"insufficient balance: requested {value:.2f}, available {available:.2f}",
                details={"requested": f"{value:.2f}", "available": f"{available:.2f}"},
            )

        req = PayoutRequest(
            vendor_id=int(vendor.id),
            requested_amount=value,
            available_balance_snapshot=available,
            status=PayoutStatus.PENDING,
            request_reason=(reason or "").strip() or None,
        )
        db.session.add(req)
        vendor.available_balance = available - value
        vendor.pending_balance = as_money(vendor.pending_balance) + value
        db.session.flush()

        notifications = []
        admin_email = (os.getenv("ADMIN_NOTIFY_EMAIL") or "").strip()
        row = queue_notification(
            "payout.requested",
            channel=CHANNEL_EMAIL,
            recipient=admin_email,
            title=f"Payout request #{req.id} from {vendor.business_name}",
            message=f"{vendor.business_name} requested a payout of KES {value:.2f}.",
            subject_type="payout_request",
            subject_id=int(req.id),
        )
        if row is not None:
            notifications.append(row)
        log_event(
            "payout.requested",
            actor_user_id=vendor.user_id,
            actor_role="vendor",
            subject_type="payout_request",
            subject_id=int(req.id),
            metadata={"vendor_id": int(vendor.id), "amount": value},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("payout_requested request_id=%s vendor_id=%s amount=%s", req.id, vendor.id, value)
    schedule_dispatch(notifications)
    return req


def reject_payout(request_id, admin_id, notes: str | None = None) -> PayoutRequest:
    try:
        req = _lock_request(request_id)
        vendor = _lock_vendor(req.vendor_id)
        _set_status(req, PayoutStatus.REJECTED)
        now = datetime.utcnow()
        req.reviewed_by = int(admin_id) if admin_id is not None else None
        req.reviewed_at = now
        req.admin_notes = (notes or "").strip() or None
        _release_hold(vendor, as_money(req.requested_amount))
        row = _vendor_sms(
            vendor,
            req,
            "payout.rejected",
            f"BuyLock: payout request #{req.id} of KES {as_money(req.requested_amount):.2f} was rejected. "
            f"{req.admin_notes or ''}".strip(),
        )
        log_event(
            "payout.rejected",
            actor_user_id=admin_id,
            actor_role="admin",
            subject_type="payout_request",
            subject_id=int(req.id),
            metadata={"notes": req.admin_notes or ""},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("payout_rejected request_id=%s admin_id=%s", req.id, admin_id)
    schedule_dispatch([row])
    return req


def _ensure_recipient(vendor: Vendor, provider) -> str:
    if (vendor.paystack_recipient_code or "").strip():
        return vendor.paystack_recipient_code
    recipient = provider.create_transfer_recipient(
        name=(vendor.account_name or vendor.business_name or "").strip(),
        account_number=(vendor.account_number or "").strip(),
        bank_code=(vendor.bank_code or "").strip(),
        recipient_type=(os.getenv("PAYOUT_RECIPIENT_TYPE") or "mobile_money").strip(),
        currency=_currency(),
    )
    vendor.paystack_recipient_code = recipient.recipient_code
    return recipient.recipient_code


def _fail_transfer(req: PayoutRequest, vendor: Vendor, reason: str) -> None:
    _set_status(req, PayoutStatus.FAILED)
    req.failure_reason = reason[:1000]
    req.failed_at = datetime.utcnow()
    req.transfer_status = "failed"
    _release_hold(vendor, as_money(req.requested_amount))


def approve_payout(request_id, admin_id, notes: str | None = None, *, provider=None) -> PayoutRequest:
    """Approve a pending request and start the bank/mobile-money transfer.

    The approval is committed before the gateway is called. A transfer that
    cannot be started marks the request failed, returns the amount to the
    vendor's available balance and raises ExternalServiceError.
    """
    try:
        req = _lock_request(request_id)
        vendor = _lock_vendor(req.vendor_id)
        if not vendor.has_payout_account():
            raise MissingBankDetails("bank details missing: vendor has no payout account")
        _set_status(req, PayoutStatus.APPROVED)
        req.reviewed_by = int(admin_id) if admin_id is not None else None
        req.reviewed_at = datetime.utcnow()
        req.admin_notes = (notes or "").strip() or None
        req.transfer_reference = req.transfer_reference or f"payout_{int(req.id)}_{int(req.vendor_id)}"
        log_event(
            "payout.approved",
            actor_user_id=admin_id,
            actor_role="admin",
            subject_type="payout_request",
            subject_id=int(req.id),
            metadata={"amount": as_money(req.requested_amount)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("payout_approved request_id=%s admin_id=%s", req.id, admin_id)

    transfer = None
    error = None
    try:
        gateway = provider or build_payments_provider(get_integration_settings())
        vendor = _lock_vendor(req.vendor_id)
        recipient_code = _ensure_recipient(vendor, gateway)
        transfer = gateway.initiate_transfer(
            amount_minor=money_major_to_minor(req.requested_amount),
            recipient_code=recipient_code,
            reference=req.transfer_reference,
            reason=f"BuyLock payout #{req.id}",
            currency=_currency(),
        )
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        error = str(e)
    except Exception as e:
        error = f"{type(e).__name__}: {e}"

    if error is not None:
        db.session.rollback()
        try:
            req = _lock_request(req.id)
            vendor = _lock_vendor(req.vendor_id)
            _fail_transfer(req, vendor, error)
            row = _vendor_sms(
                vendor,
                req,
                "payout.failed",
                f"BuyLock: payout #{req.id} could not be sent. The amount is back in your available balance.",
            )
            log_event(
                "payout.failed",
                actor_user_id=admin_id,
                actor_role="admin",
                subject_type="payout_request",
                subject_id=int(req.id),
                severity="WARN",
                metadata={"reason": error},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        current_app.logger.warning("payout_transfer_failed request_id=%s err=%s", req.id, error)
        schedule_dispatch([row])
        raise ExternalServiceError(f"transfer failed: {error}", code="transfer_failed")

    try:
        req = _lock_request(req.id)
        _set_status(req, PayoutStatus.PROCESSING)
        req.transfer_code = (transfer.transfer_code or "")[:128] or None
        req.transfer_reference = (transfer.reference or req.transfer_reference)[:128]
        req.transfer_status = (transfer.status or "pending")[:24]
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "payout_transfer_started request_id=%s transfer_code=%s status=%s",
        req.id,
        req.transfer_code,
        req.transfer_status,
    )

    if (transfer.status or "").strip().lower() == "success":
        return settle_transfer(req.id, "success")
    return req


def _mark_earnings_paid_out(vendor_id: int, req: PayoutRequest, amount: Decimal) -> None:
    """Mark the oldest available earnings fully covered by ``amount`` as paid out."""
    remaining = amount
    rows = (
        VendorEarning.query.filter_by(vendor_id=int(vendor_id), status="available")
        .order_by(VendorEarning.available_date.asc(), VendorEarning.id.asc())
        .all()
    )
    now = datetime.utcnow()
    for earning in rows:
        net = as_money(earning.net_earnings)
        if net > remaining:
            break
        earning.status = "paid_out"
        earning.paid_out_at = now
        earning.payout_request_id = int(req.id)
        remaining -= net


def _find_for_settlement(ref) -> PayoutRequest:
    if isinstance(ref, int) or (isinstance(ref, str) and ref.strip().isdigit()):
        return _lock_request(int(ref))
    key = (ref or "").strip()
    if not key:
        raise ValidationError("transfer code or reference is required")
    req = (
        PayoutRequest.query.with_for_update()
        .filter((PayoutRequest.transfer_code == key) | (PayoutRequest.transfer_reference == key))
        .first()
    )
    if req is None:
        raise NotFound(f"payout request for transfer {key} not found")
    return req


def settle_transfer(ref, outcome: str, *, reason: str | None = None) -> PayoutRequest:
    """Apply the gateway's final word on a transfer. Terminal requests are left untouched."""
    result = (outcome or "").strip().lower()
    if result not in ("success", "failed", "reversed"):
        raise ValidationError("outcome must be success, failed or reversed")

    notifications = []
    try:
        req = _find_for_settlement(ref)
        if req.status in PayoutStatus.TERMINAL:
            db.session.rollback()
            current_app.logger.info("payout_settle_noop request_id=%s status=%s outcome=%s", req.id, req.status, result)
            return req
        vendor = _lock_vendor(req.vendor_id)
        amount = as_money(req.requested_amount)
        now = datetime.utcnow()

        if result == "success":
            _set_status(req, PayoutStatus.COMPLETED)
            req.transfer_status = "success"
            req.actual_paid_amount = amount
            req.completed_at = now
            vendor.pending_balance = as_money(vendor.pending_balance) - amount
            vendor.total_paid_out = as_money(vendor.total_paid_out) + amount
            _mark_earnings_paid_out(int(vendor.id), req, amount)
            message = f"BuyLock: payout #{req.id} of KES {amount:.2f} has been sent to your account."
        else:
            _fail_transfer(req, vendor, reason or f"transfer {result}")
            message = f"BuyLock: payout #{req.id} failed. The amount is back in your available balance."

        row = _vendor_sms(vendor, req, f"payout.{req.status}", message)
        if row is not None:
            notifications.append(row)
        log_event(
            "payout.settled",
            actor_role="system",
            subject_type="payout_request",
            subject_id=int(req.id),
            severity="INFO" if result == "success" else "WARN",
            metadata={"outcome": result, "amount": amount, "reason": reason or ""},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("payout_settled request_id=%s outcome=%s status=%s", req.id, result, req.status)
    schedule_dispatch(notifications)
    return req


def _sum(query) -> Decimal:
    return as_money(query.scalar() or ZERO)


def vendor_earnings_summary(vendor_id) -> dict:
    vendor = db.session.get(Vendor, int(vendor_id))
    if vendor is None:
        raise NotFound(f"vendor {vendor_id} not found")
    by_status = {}
    for status in ("pending", "available", "paid_out"):
        by_status[status] = _sum(
            db.session.query(func.coalesce(func.sum(VendorEarning.net_earnings), 0)).filter(
                VendorEarning.vendor_id == int(vendor.id), VendorEarning.status == status
            )
        )
    gross = _sum(
        db.session.query(func.coalesce(func.sum(VendorEarning.gross_amount), 0)).filter(
            VendorEarning.vendor_id == int(vendor.id)
        )
    )
    fees = _sum(
        db.session.query(func.coalesce(func.sum(VendorEarning.platform_fee), 0)).filter(
            VendorEarning.vendor_id == int(vendor.id)
        )
    )
    recent = (
        VendorEarning.query.filter_by(vendor_id=int(vendor.id))
        .order_by(VendorEarning.earning_date.desc(), VendorEarning.id.desc())
        .limit(20)
        .all()
    )
    payload = vendor.balances_dict()
    payload.update(
        {
            "vendor_id": int(vendor.id),
            "gross_sales": f"{gross:.2f}",
            "platform_fees": f"{fees:.2f}",
            "earnings_on_hold": f"{by_status['pending']:.2f}",
            "earnings_available": f"{by_status['available']:.2f}",
            "earnings_paid_out": f"{by_status['paid_out']:.2f}",
            "recent": [e.to_dict() for e in recent],
        }
    )
    return payload


def list_payout_requests(*, vendor_id=None, status: str | None = None, limit: int = 100) -> list[PayoutRequest]:
    q = PayoutRequest.query
    if vendor_id is not None:
        q = q.filter_by(vendor_id=int(vendor_id))
    if status:
        q = q.filter_by(status=status.strip().lower())
    return q.order_by(PayoutRequest.created_at.desc(), PayoutRequest.id.desc()).limit(max(1, min(int(limit), 500))).all()
