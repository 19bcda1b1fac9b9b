"""
Plan reconciliation job.

Retries the unsynced field groups of every pending-sync plan using the
changeset stored when the plan went pending. A plan whose groups all reach
the provider is committed locally and leaves the pending state; a plan that
fails again stays pending with its remaining groups recorded.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from matchadmin.core.errors import AppError, ConcurrencyConflict
from matchadmin.core.logging import log_event
from matchadmin.features.plans.service import PlanCatalog


class PlanReconciler:
    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog

    def run(self, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        pending = self.catalog.list_pending_plans()[:limit]
        resolved: List[str] = []
        still_pending: List[Dict[str, Any]] = []
        skipped: List[str] = []

        for plan in pending:
            try:
                self.catalog.resync_pending(plan.plan_id)
                resolved.append(plan.plan_id)
            except ConcurrencyConflict:
                # Another sync holds the plan; it will settle the pending state itself
                skipped.append(plan.plan_id)
            except AppError as e:
                still_pending.append({"plan_id": plan.plan_id, "code": e.code, "message": e.message})
                log_event(
                    "warning",
                    "plan.reconcile.failed",
                    plan_id=plan.plan_id,
                    error_code=e.code,
                    extra={"error_message": e.message},
                )

        stats = {
            "plans_checked": len(pending),
            "resolved": resolved,
            "still_pending": still_pending,
            "skipped": skipped,
            "timestamp": now.isoformat(),
        }
        log_event(
            "info",
            "plan.reconcile.completed",
            extra={"checked": len(pending), "resolved": len(resolved), "failed": len(still_pending)},
        )
        return stats
