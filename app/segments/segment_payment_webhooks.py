from __future__ import annotations

import hashlib
import os
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from app.errors import MarketplaceError, NotFound
from app.extensions import db
from app.integrations.common import integration_mode
from app.integrations.payments.paystack_provider import verify_signature
from app.models import WebhookEvent
from app.services.order_lifecycle_service import create_order_from_payment
from app.services.payout_service import settle_transfer
from app.utils.money import money_minor_to_major
from app.utils.observability import get_request_id
from app.utils.platform_settings import get_integration_settings

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")

TRANSFER_OUTCOMES = {
    "transfer.success": "success",
    "transfer.failed": "failed",
    "transfer.reversed": "reversed",
}


def _event_id(payload: dict, event: str, data: dict) -> str:
    maybe_id = payload.get("id") or payload.get("event_id") or data.get("id") or ""
    event_id = str(maybe_id).strip()
    if event_id:
        return f"{event}:{event_id}"[:128]
    base = f"{event}:{data.get('reference', '')}:{data.get('transfer_code', '')}:{data.get('amount', '')}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()[:32]


def _record_event(event_id: str, event: str, reference: str, raw: bytes) -> WebhookEvent | None:
    row = WebhookEvent(
        provider="paystack",
        event_id=event_id,
        event_type=event[:64],
        reference=reference[:128] or None,
        request_id=(get_request_id() or "")[:64] or None,
        payload_hash=hashlib.sha256(raw or b"").hexdigest(),
    )
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return row


def _finish(row: WebhookEvent, status: str, error: str | None = None) -> None:
    row = db.session.get(WebhookEvent, int(row.id))
    row.status = status
    row.processed_at = datetime.utcnow()
    row.error = (error or "")[:2000] or None
    db.session.commit()


def _handle_charge_success(data: dict) -> dict:
    reference = str(data.get("reference") or "").strip()
    meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    buyer_id = meta.get("buyer_id") or meta.get("user_id")
    if buyer_id is None or meta.get("vendor_id") is None:
        return {"ignored": True, "reason": "metadata missing buyer_id or vendor_id"}
    order_meta = dict(meta)
    order_meta["payment_status"] = "completed"
    order_meta["amount_paid"] = money_minor_to_major(data.get("amount") or 0)
    order_meta.setdefault("payment_method", "paystack")
    order, created = create_order_from_payment(reference, buyer_id, meta.get("items") or [], order_meta)
    return {"order_id": int(order.id), "created": created}


def process_paystack_webhook(*, payload, raw: bytes, signature: str | None) -> tuple[dict, int]:
    if not isinstance(payload, dict):
        return {"ok": False, "error": "invalid_payload", "message": "payload must be an object"}, 400
    event = str(payload.get("event") or "").strip()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    if not event:
        return {"ok": False, "error": "invalid_payload", "message": "event is required"}, 400

    settings = get_integration_settings()
    strict_signature = (
        integration_mode(settings) == "live"
        and settings.payments_provider == "paystack"
        and settings.paystack_enabled
    )
    verified = False
    if strict_signature:
        secret = (os.getenv("PAYSTACK_WEBHOOK_SECRET") or os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
        if not secret:
            return {"ok": False, "error": "integration_misconfigured", "message": "missing PAYSTACK_WEBHOOK_SECRET"}, 400
        verified = verify_signature(raw or b"", signature or "", secret)
        if not verified:
            return {"ok": False, "error": "invalid_signature"}, 400

    reference = str(data.get("reference") or "").strip()
    row = _record_event(_event_id(payload, event, data), event, reference, raw)
    if row is None:
        return {"ok": True, "replayed": True, "verified": verified}, 200

    try:
        if event == "charge.success":
            if not reference:
                _finish(row, "failed", "data.reference is required")
                return {"ok": False, "error": "invalid_payload", "message": "data.reference is required"}, 400
            result = _handle_charge_success(data)
        elif event in TRANSFER_OUTCOMES:
            ref = str(data.get("transfer_code") or reference).strip()
            req = settle_transfer(ref, TRANSFER_OUTCOMES[event], reason=data.get("reason") or data.get("message"))
            result = {"payout_request_id": int(req.id), "payout_status": req.status}
        else:
            result = {"ignored": True}
    except NotFound as e:
        _finish(row, "ignored", e.message)
        return {"ok": True, "ignored": True, "verified": verified, "message": e.message}, 200
    except MarketplaceError as e:
        db.session.rollback()
        _finish(row, "failed", e.message)
        current_app.logger.warning("paystack_webhook_rejected event=%s reference=%s err=%s", event, reference, e.message)
        return {"ok": False, "error": e.code, "message": e.message}, 200

    _finish(row, "ignored" if result.get("ignored") else "processed")
    current_app.logger.info("paystack_webhook_processed event=%s reference=%s result=%s", event, reference, result)
    body = {"ok": True, "verified": verified}
    body.update(result)
    return body, 200


@webhooks_bp.post("/paystack")
def paystack_webhook():
    raw = request.get_data() or b"{}"
    payload = request.get_json(silent=True)
    body, status = process_paystack_webhook(
        payload=payload,
        raw=raw,
        signature=request.headers.get("X-Paystack-Signature"),
    )
    return jsonify(body), int(status)
