from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.errors import ExternalServiceError, ValidationError
from app.extensions import db
from app.services.commission_service import (
    calculate_commission,
    get_platform_fee_percentage,
    set_platform_fee_percentage,
)
from app.services.payout_service import (
    approve_payout,
    list_payout_requests,
    reject_payout,
    request_payout,
    vendor_earnings_summary,
)
from app.utils.auth import require_user, vendor_for

payouts_bp = Blueprint("payouts_bp", __name__, url_prefix="/api")


@payouts_bp.get("/vendor/earnings")
def vendor_earnings():
    u = require_user("vendor")
    vendor = vendor_for(u)
    return jsonify({"ok": True, "earnings": vendor_earnings_summary(vendor.id)}), 200


@payouts_bp.get("/vendor/payout-requests")
def vendor_payout_requests():
    u = require_user("vendor")
    vendor = vendor_for(u)
    rows = list_payout_requests(vendor_id=vendor.id, status=request.args.get("status"))
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "balances": vendor.balances_dict()}), 200


@payouts_bp.post("/vendor/payout-requests")
def vendor_request_payout():
    u = require_user("vendor")
    vendor = vendor_for(u)
    data = request.get_json(silent=True) or {}
    if data.get("amount") is None:
        raise ValidationError("amount is required")
    req = request_payout(vendor.id, data.get("amount"), data.get("reason"))
    return jsonify({"ok": True, "payout_request": req.to_dict()}), 201


def _limit_arg(default: int = 100) -> int:
    raw = (request.args.get("limit") or "").strip()
    if not raw:
        return default
    try:
        limit = int(raw)
    except ValueError:
        raise ValidationError("limit must be an integer")
    if limit < 1:
        raise ValidationError("limit must be at least 1")
    return min(limit, 500)


@payouts_bp.get("/admin/payout-requests")
def admin_payout_requests():
    require_user("admin")
    vendor_id = request.args.get("vendor_id")
    rows = list_payout_requests(
        vendor_id=int(vendor_id) if vendor_id and vendor_id.isdigit() else None,
        status=request.args.get("status"),
        limit=_limit_arg(),
    )
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@payouts_bp.post("/admin/payout-requests/<int:request_id>/approve")
def admin_approve_payout(request_id: int):
    u = require_user("admin")
    data = request.get_json(silent=True) or {}
    try:
        req = approve_payout(request_id, int(u.id), data.get("admin_notes") or data.get("notes"))
    except ExternalServiceError as e:
        current_app.logger.warning("admin_payout_approve_failed request_id=%s err=%s", request_id, e.message)
        raise
    return jsonify({"ok": True, "payout_request": req.to_dict()}), 200


@payouts_bp.post("/admin/payout-requests/<int:request_id>/reject")
def admin_reject_payout(request_id: int):
    u = require_user("admin")
    data = request.get_json(silent=True) or {}
    req = reject_payout(request_id, int(u.id), data.get("admin_notes") or data.get("notes"))
    return jsonify({"ok": True, "payout_request": req.to_dict()}), 200


@payouts_bp.get("/admin/commission")
def admin_get_commission():
    require_user("admin")
    pct = get_platform_fee_percentage()
    sample = calculate_commission("1000", pct)
    return jsonify({"ok": True, "platform_fee_percentage": f"{pct:.2f}", "example": sample.to_dict()}), 200


@payouts_bp.put("/admin/commission")
def admin_set_commission():
    u = require_user("admin")
    data = request.get_json(silent=True) or {}
    if data.get("platform_fee_percentage") is None:
        raise ValidationError("platform_fee_percentage is required")
    try:
        pct = set_platform_fee_percentage(data.get("platform_fee_percentage"), updated_by=int(u.id))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("platform_fee_updated pct=%s admin_id=%s", pct, u.id)
    return jsonify({"ok": True, "platform_fee_percentage": f"{pct:.2f}"}), 200
