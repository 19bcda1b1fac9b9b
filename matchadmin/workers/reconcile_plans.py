"""
Retry pending-sync plans against the billing provider.

Usage:
    python -m matchadmin.workers.reconcile_plans --once
    python -m matchadmin.workers.reconcile_plans --loop --sleep 300
"""
from __future__ import annotations

import argparse
import os
import time

from matchadmin.core.config import settings
from matchadmin.engine import BillingEngine


DEFAULT_LOOP_SECONDS = int(os.getenv("MATCHADMIN_RECONCILE_LOOP_SECONDS", "300") or 300)


def main() -> int:
    parser = argparse.ArgumentParser(description="Retry unsynced field groups of pending-sync plans.")
    parser.add_argument("--once", action="store_true", help="Run one reconciliation pass and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=100, help="Plans per pass")
    parser.add_argument("--sleep", type=int, default=DEFAULT_LOOP_SECONDS, help="Seconds between passes (when --loop)")
    args = parser.parse_args()

    with BillingEngine.from_settings(settings) as engine:
        if args.loop:
            while True:
                report = engine.reconciler.run(limit=args.limit)
                print(f"[reconcile-plans] {report}")
                time.sleep(max(1, args.sleep))

        report = engine.reconciler.run(limit=args.limit)
        print(report)
        return 0 if not report["still_pending"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
