from __future__ import annotations

import argparse
import json
import os
import sys


def _bootstrap_app():
    from app import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Recompute vendor balances from earnings and payout requests and report drift.")
    parser.add_argument("--persist", action="store_true", help="Persist report row in reconciliation_reports.")
    parser.add_argument("--apply", action="store_true", help="Overwrite drifted vendor balances with computed values.")
    args = parser.parse_args()

    _bootstrap_app()
    from app.services.reconciliation_service import persist_report, recompute_vendor_balances

    summary = recompute_vendor_balances(apply=bool(args.apply))
    if args.persist:
        row = persist_report(summary, created_by=None)
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2))
    drift_count = int(summary.get("drift_count") or 0)
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())
