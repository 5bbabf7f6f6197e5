from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.models import ReconciliationReport
from app.services.reconciliation_service import persist_report, recompute_vendor_balances
from app.utils.auth import require_user

recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin/reconciliation")


@recon_bp.get("/vendor-balances")
def vendor_balances():
    u = require_user("admin")
    summary = recompute_vendor_balances()
    report_id = None
    if (request.args.get("persist") or "").strip().lower() in ("1", "true", "yes"):
        report_id = int(persist_report(summary, created_by=int(u.id)).id)
    return jsonify({"ok": True, "report_id": report_id, "summary": summary}), 200


@recon_bp.get("/latest")
def latest_report():
    require_user("admin")
    row = ReconciliationReport.query.order_by(ReconciliationReport.created_at.desc()).first()
    return jsonify({"ok": True, "report": row.to_dict() if row else None}), 200
