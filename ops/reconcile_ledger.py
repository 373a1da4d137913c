from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _bootstrap_app():
    from handoff import create_app

    app = create_app()
    app.app_context().push()
    return app


def main() -> int:
    parser = argparse.ArgumentParser(description="Recompute wallet balances from the transaction ledger and report drift.")
    parser.add_argument("--currency", default="", help="Only reconcile wallets in this currency.")
    parser.add_argument("--persist", action="store_true", help="Persist report row in reconciliation_reports.")
    args = parser.parse_args()

    _bootstrap_app()
    from handoff.services.reconciliation_service import persist_report, recompute_wallet_balances

    summary = recompute_wallet_balances(currency=(args.currency or None))
    if args.persist:
        row = persist_report(summary, created_by=None)
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2))
    drift_count = int(summary.get("drift_count") or 0)
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
