from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from app.extensions import db
from app.models import PayoutRequest, ReconciliationReport, Vendor, VendorEarning
from app.utils.money import ZERO, as_money

HELD_STATUSES = ("pending", "approved", "processing")


def _sum_by_vendor(model, column, *filters) -> dict[int, Decimal]:
    rows = (
        db.session.query(model.vendor_id, func.coalesce(func.sum(column), 0))
        .filter(*filters)
        .group_by(model.vendor_id)
        .all()
    )
    return {int(vendor_id): as_money(total) for vendor_id, total in rows}


def expected_balances() -> dict[int, dict]:
    """Vendor balances derived from earnings and payout request rows."""
    earned = _sum_by_vendor(VendorEarning, VendorEarning.net_earnings, VendorEarning.status.in_(("available", "paid_out")))
    held = _sum_by_vendor(PayoutRequest, PayoutRequest.requested_amount, PayoutRequest.status.in_(HELD_STATUSES))
    paid = _sum_by_vendor(PayoutRequest, PayoutRequest.actual_paid_amount, PayoutRequest.status == "completed")
    out = {}
    for vendor_id in set(earned) | set(held) | set(paid):
        total = earned.get(vendor_id, ZERO)
        pending = held.get(vendor_id, ZERO)
        paid_out = paid.get(vendor_id, ZERO)
        out[vendor_id] = {
            "total_earnings": total,
            "available_balance": total - pending - paid_out,
            "pending_balance": pending,
            "total_paid_out": paid_out,
        }
    return out


def recompute_vendor_balances(*, tolerance: Decimal = Decimal("0.01"), apply: bool = False) -> dict:
    expected = expected_balances()
    vendors = Vendor.query.order_by(Vendor.id.asc()).all()
    drift_items = []

    for vendor in vendors:
        computed = expected.get(
            int(vendor.id),
            {"total_earnings": ZERO, "available_balance": ZERO, "pending_balance": ZERO, "total_paid_out": ZERO},
        )
        drifts = {}
        for field, value in computed.items():
            stored = as_money(getattr(vendor, field))
            if abs(stored - value) > tolerance:
                drifts[field] = {"stored": f"{stored:.2f}", "computed": f"{value:.2f}", "drift": f"{stored - value:.2f}"}
        identity_gap = as_money(vendor.total_earnings) - (
            as_money(vendor.available_balance) + as_money(vendor.pending_balance) + as_money(vendor.total_paid_out)
        )
        if drifts or abs(identity_gap) > tolerance:
            drift_items.append(
                {
                    "vendor_id": int(vendor.id),
                    "business_name": vendor.business_name or "",
                    "fields": drifts,
                    "identity_gap": f"{identity_gap:.2f}",
                }
            )
            if apply:
                for field, value in computed.items():
                    setattr(vendor, field, value)

    if apply and drift_items:
        db.session.commit()

    return {
        "ok": True,
        "scope": "vendor_balances",
        "vendor_count": len(vendors),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "applied": bool(apply and drift_items),
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "vendor_balances")[:64],
        vendor_count=int(summary.get("vendor_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        summary_json=json.dumps(summary)[:200000],
        created_by=int(created_by) if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report
