"""
matchadmin/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (Free, Silver, Gold, Platinum)
- Plan lookups (default/baseline plan, by id, by name, pending-sync plans)
- Staged synchronization of plan edits to the billing provider
- Plan reassignment with swipe-limit snapshot recompute
- Subscriber counts for the dashboard

Sync protocol (sync_plan):
1. validate the changeset, load the plan
2. take a per-plan sync lease with one conditional update on (plan_id, version)
3. push field groups to the provider in fixed order: product -> price -> availability
4. all groups ok      -> one local write, pending flag cleared
   first group fails  -> local record untouched, ExternalProviderError
   a call times out   -> treated as possibly applied: pending_sync, lease held until the call settles
   later group fails  -> local values untouched, pending_sync + unsynced groups stored, ConsistencyError
"""

from datetime import datetime, timedelta, timezone
from concurrent.futures import Future
from threading import Event
from typing import Any, Dict, List, Mapping, Optional, Union

import pydantic
from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from matchadmin.core.config import settings
from matchadmin.core.database import accounts, get_db_session, plans
from matchadmin.core.errors import (
    ConcurrencyConflict,
    ConsistencyError,
    ExternalProviderError,
    NotFoundError,
    OperationCancelled,
    ProviderErrorKind,
    ValidationError,
    ValidationReason,
)
from matchadmin.core.logging import log_event
from matchadmin.core.metrics import plan_sync_total, plans_pending_sync
from matchadmin.features.billing.adapter import BillingProviderAdapter
from matchadmin.models.account import Account
from matchadmin.models.plan import (
    SYNC_ORDER,
    FieldGroup,
    PlanChangeset,
    SubscriptionPlan,
    to_minor_units,
)


# Default plan configurations
DEFAULT_PLANS = {
    "free": {
        "name": "Free Plan",
        "price_minor_units": 0,
        "is_default": True,
        "features": {
            "swipeLimit": 50,
            "superLikesPerDay": 0,
            "seeWhoLikesYou": False,
            "adFree": False,
        },
    },
    "silver": {
        "name": "Silver Plan",
        "price_minor_units": 999,
        "is_default": False,
        "features": {
            "swipeLimit": 200,
            "superLikesPerDay": 1,
            "seeWhoLikesYou": False,
            "adFree": True,
        },
    },
    "gold": {
        "name": "Gold Plan",
        "price_minor_units": 1999,
        "is_default": False,
        "features": {
            "swipeLimit": 1000,
            "superLikesPerDay": 5,
            "seeWhoLikesYou": True,
            "adFree": True,
        },
    },
    "platinum": {
        "name": "Platinum Plan",
        "price_minor_units": 2999,
        "is_default": False,
        "features": {
            "swipeLimit": -1,  # unlimited
            "superLikesPerDay": 10,
            "seeWhoLikesYou": True,
            "adFree": True,
        },
    },
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_plan(row) -> SubscriptionPlan:
    return SubscriptionPlan(
        plan_id=row.plan_id,
        name=row.name,
        price_minor_units=row.price_minor_units,
        currency=row.currency,
        features=dict(row.features or {}),
        available=row.available,
        is_default=row.is_default,
        external_product_id=row.external_product_id,
        external_price_id=row.external_price_id,
        pending_sync=row.pending_sync,
        pending_groups=[FieldGroup(g) for g in (row.pending_groups or [])],
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def swipe_limit_of(plan: SubscriptionPlan) -> int:
    """Snapshot value of the plan's swipe-limit feature."""
    if plan.swipe_limit is None:
        raise ValidationError(
            f"Plan {plan.plan_id} has no numeric {settings.SWIPE_LIMIT_FEATURE} feature",
        )
    return plan.swipe_limit


class PlanCatalog:
    """Owns SubscriptionPlan records and their synchronization with the provider."""

    def __init__(self, adapter: BillingProviderAdapter, *, lease_seconds: Optional[int] = None):
        self.adapter = adapter
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.PLAN_SYNC_LEASE_SECONDS

    # -- seeding and lookups ---------------------------------------------

    def seed_plans(self, currency: Optional[str] = None) -> None:
        """
        Seed default plans into database (idempotent).

        Safe to call multiple times; existing plans are left as they are.
        """
        with get_db_session() as session:
            for plan_id, config in DEFAULT_PLANS.items():
                existing = session.execute(
                    select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
                ).first()
                if existing:
                    continue
                session.execute(
                    insert(plans).values(
                        plan_id=plan_id,
                        name=config["name"],
                        price_minor_units=config["price_minor_units"],
                        currency=currency or settings.STRIPE_CURRENCY,
                        features=config["features"],
                        available=True,
                        is_default=config["is_default"],
                        pending_sync=False,
                        version=1,
                    )
                )

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        with get_db_session() as session:
            row = session.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
        if not row:
            raise NotFoundError(f"Plan {plan_id} not found")
        return _row_to_plan(row)

    def get_plan_by_name(self, name: str) -> SubscriptionPlan:
        with get_db_session() as session:
            row = session.execute(select(plans).where(plans.c.name == name)).first()
        if not row:
            raise NotFoundError(f"Plan '{name}' not found")
        return _row_to_plan(row)

    def get_default_plan(self) -> SubscriptionPlan:
        """The baseline plan new accounts start on."""
        with get_db_session() as session:
            row = session.execute(
                select(plans).where(plans.c.is_default == True)  # noqa: E712
            ).first()
            if not row:
                row = session.execute(
                    select(plans).where(plans.c.name == settings.DEFAULT_PLAN_NAME)
                ).first()
        if not row:
            raise NotFoundError(f"Default plan '{settings.DEFAULT_PLAN_NAME}' not found")
        return _row_to_plan(row)

    def list_plans(self) -> List[SubscriptionPlan]:
        with get_db_session() as session:
            rows = session.execute(select(plans).order_by(plans.c.price_minor_units, plans.c.plan_id)).fetchall()
        return [_row_to_plan(row) for row in rows]

    def list_pending_plans(self) -> List[SubscriptionPlan]:
        with get_db_session() as session:
            rows = session.execute(
                select(plans).where(plans.c.pending_sync == True).order_by(plans.c.plan_id)  # noqa: E712
            ).fetchall()
        return [_row_to_plan(row) for row in rows]

    def pending_changeset(self, plan_id: str) -> Optional[PlanChangeset]:
        with get_db_session() as session:
            row = session.execute(
                select(plans.c.pending_changeset).where(plans.c.plan_id == plan_id)
            ).first()
        if not row or not row.pending_changeset:
            return None
        return PlanChangeset(**row.pending_changeset)

    def link_external_ids(self, plan_id: str, product_id: str, price_key: str) -> SubscriptionPlan:
        """
        Record the provider identifiers of a plan.

        Identifiers are write-once: linking again with the same values is a
        no-op, linking with different values is rejected.
        """
        with get_db_session() as session:
            session.execute(
                update(plans)
                .where(plans.c.plan_id == plan_id)
                .where(plans.c.external_product_id.is_(None))
                .where(plans.c.external_price_id.is_(None))
                .values(external_product_id=product_id, external_price_id=price_key)
            )
        plan = self.get_plan(plan_id)
        if plan.external_product_id != product_id or plan.external_price_id != price_key:
            raise ValidationError(f"Plan {plan_id} is already linked to other provider identifiers")
        return plan

    # -- synchronization -------------------------------------------------

    def sync_plan(
        self,
        plan_id: str,
        changeset: Union[PlanChangeset, Mapping[str, Any]],
        *,
        expected_version: Optional[int] = None,
        cancel_event: Optional[Event] = None,
    ) -> SubscriptionPlan:
        """
        Apply a partial plan edit to the provider, then to the local record.

        Args:
            plan_id: Plan to edit
            changeset: Fields to change; absent fields are left untouched everywhere
            expected_version: Optional optimistic-concurrency check against the caller's read
            cancel_event: Checked between field groups, never during a provider call

        Returns:
            The updated plan

        Raises:
            ValidationError, NotFoundError: bad input, nothing touched
            ConcurrencyConflict: version mismatch or another sync holds the plan
            ExternalProviderError: first provider call failed, nothing changed
            ConsistencyError: provider partially updated (or a call timed out), plan marked pending-sync
            OperationCancelled: cancelled before any provider call
        """
        changeset = self._coerce_changeset(changeset)
        self._validate(changeset)

        plan = self.get_plan(plan_id)
        if expected_version is not None and plan.version != expected_version:
            plan_sync_total.inc({"outcome": "conflict"})
            raise ConcurrencyConflict(
                f"Plan {plan_id} is at version {plan.version}, expected {expected_version}"
            )
        if changeset.name is not None:
            self._check_name_available(plan_id, changeset.name)

        merged = changeset
        if plan.pending_sync:
            merged = changeset.merged_over(self.pending_changeset(plan_id))
        self._check_external_identity(plan, merged.groups())

        lease_version = self._acquire_lease(plan)
        return self._run_groups(plan, merged, merged.groups(), lease_version, cancel_event)

    def resync_pending(self, plan_id: str) -> SubscriptionPlan:
        """Retry only the unsynced groups of a pending-sync plan with its stored changeset."""
        plan = self.get_plan(plan_id)
        if not plan.pending_sync:
            return plan
        changeset = self.pending_changeset(plan_id) or PlanChangeset()
        groups = [g for g in SYNC_ORDER if g in plan.pending_groups and g in changeset.groups()]
        self._check_external_identity(plan, groups)
        lease_version = self._acquire_lease(plan)
        return self._run_groups(plan, changeset, groups, lease_version, None)

    def _run_groups(
        self,
        plan: SubscriptionPlan,
        changeset: PlanChangeset,
        groups: List[FieldGroup],
        lease_version: int,
        cancel_event: Optional[Event],
    ) -> SubscriptionPlan:
        done: List[FieldGroup] = []
        for index, group in enumerate(groups):
            remaining = groups[index:]
            if cancel_event is not None and cancel_event.is_set():
                if not done and not plan.pending_sync:
                    self._release_lease(plan.plan_id, lease_version)
                    plan_sync_total.inc({"outcome": "cancelled"})
                    raise OperationCancelled(f"Sync of plan {plan.plan_id} cancelled before any provider call")
                self._mark_pending(plan.plan_id, lease_version, remaining, changeset)
                raise ConsistencyError(
                    f"Sync of plan {plan.plan_id} cancelled; unsynced groups: {', '.join(g.value for g in remaining)}",
                    plan_id=plan.plan_id,
                    pending_groups=[g.value for g in remaining],
                )
            try:
                self._apply_group(plan, group, changeset)
            except ExternalProviderError as e:
                failed = e.for_group(group.value)
                possibly_applied = e.kind is ProviderErrorKind.TIMEOUT
                if not done and not plan.pending_sync and not possibly_applied:
                    self._release_lease(plan.plan_id, lease_version)
                    plan_sync_total.inc({"outcome": "failed"})
                    log_event(
                        "warning",
                        "plan.sync.failed",
                        plan_id=plan.plan_id,
                        error_code=e.kind.value,
                        extra={"field_group": group.value, "error_message": e.message},
                    )
                    raise failed
                self._mark_pending(plan.plan_id, lease_version, remaining, changeset, in_flight=e.in_flight)
                raise ConsistencyError(
                    f"Plan {plan.plan_id} is pending sync; unsynced groups: {', '.join(g.value for g in remaining)}",
                    plan_id=plan.plan_id,
                    pending_groups=[g.value for g in remaining],
                ) from failed
            except Exception:
                if done or plan.pending_sync:
                    self._mark_pending(plan.plan_id, lease_version, remaining, changeset)
                else:
                    self._release_lease(plan.plan_id, lease_version)
                raise
            done.append(group)

        return self._commit(plan, changeset, lease_version)

    def _apply_group(self, plan: SubscriptionPlan, group: FieldGroup, changeset: PlanChangeset) -> None:
        if group is FieldGroup.PRODUCT:
            self.adapter.update_product(plan.external_product_id, name=changeset.name, features=changeset.features)
        elif group is FieldGroup.PRICE:
            self.adapter.update_product_price(
                plan.external_product_id,
                plan.external_price_id,
                to_minor_units(changeset.price),
                plan.currency,
            )
        elif group is FieldGroup.AVAILABILITY:
            self.adapter.set_product_active(plan.external_product_id, changeset.available)

    def _acquire_lease(self, plan: SubscriptionPlan) -> int:
        """Claim the plan for one sync; returns the version the lease holds."""
        now = _utcnow()
        with get_db_session() as session:
            result = session.execute(
                update(plans)
                .where(plans.c.plan_id == plan.plan_id)
                .where(plans.c.version == plan.version)
                .where(or_(plans.c.sync_lease_expires_at.is_(None), plans.c.sync_lease_expires_at < now))
                .values(
                    version=plans.c.version + 1,
                    sync_lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
            )
            if result.rowcount != 1:
                plan_sync_total.inc({"outcome": "conflict"})
                raise ConcurrencyConflict(f"Plan {plan.plan_id} is being synced by another caller")
        return plan.version + 1

    def _release_lease(self, plan_id: str, lease_version: int) -> None:
        with get_db_session() as session:
            session.execute(
                update(plans)
                .where(plans.c.plan_id == plan_id)
                .where(plans.c.version == lease_version)
                .values(sync_lease_expires_at=None)
            )

    def _mark_pending(
        self,
        plan_id: str,
        lease_version: int,
        groups: List[FieldGroup],
        changeset: PlanChangeset,
        in_flight: Optional[Future] = None,
    ) -> None:
        """
        Record unsynced groups and the changeset they belong to.

        With a provider call still in flight the lease stays held until that
        call settles (or the lease expires), so no other sync can overtake it.
        """
        holding = in_flight is not None and not in_flight.done()
        lease_expires_at = _utcnow() + timedelta(seconds=self.lease_seconds) if holding else None
        with get_db_session() as session:
            session.execute(
                update(plans)
                .where(plans.c.plan_id == plan_id)
                .where(plans.c.version == lease_version)
                .values(
                    pending_sync=True,
                    pending_groups=[g.value for g in groups],
                    pending_changeset=changeset.to_json(),
                    sync_lease_expires_at=lease_expires_at,
                    version=lease_version + 1,
                )
            )
        plan_sync_total.inc({"outcome": "pending"})
        self._refresh_pending_gauge()
        log_event(
            "error",
            "plan.sync.pending",
            plan_id=plan_id,
            error_code="pending_sync",
            extra={"pending_groups": [g.value for g in groups], "lease_held": holding},
        )
        if holding:
            in_flight.add_done_callback(lambda _f: self._release_settled_lease(plan_id, lease_version + 1))

    def _release_settled_lease(self, plan_id: str, version: int) -> None:
        self._release_lease(plan_id, version)
        log_event("info", "plan.sync.lease_released", plan_id=plan_id, extra={"version": version})

    def _commit(self, plan: SubscriptionPlan, changeset: PlanChangeset, lease_version: int) -> SubscriptionPlan:
        values: Dict[str, Any] = {}
        if changeset.name is not None:
            values["name"] = changeset.name
        if changeset.features is not None:
            values["features"] = changeset.features
        if changeset.price is not None:
            values["price_minor_units"] = to_minor_units(changeset.price)
        if changeset.available is not None:
            values["available"] = changeset.available
        values.update(
            pending_sync=False,
            pending_groups=None,
            pending_changeset=None,
            sync_lease_expires_at=None,
            version=lease_version + 1,
        )

        try:
            with get_db_session() as session:
                result = session.execute(
                    update(plans)
                    .where(plans.c.plan_id == plan.plan_id)
                    .where(plans.c.version == lease_version)
                    .values(**values)
                )
                if result.rowcount != 1:
                    raise ConcurrencyConflict(f"Sync lease on plan {plan.plan_id} was lost before commit")
        except IntegrityError as e:
            self._mark_pending(plan.plan_id, lease_version, changeset.groups(), changeset)
            raise ConsistencyError(
                f"Plan {plan.plan_id} synced externally but the local write was rejected",
                plan_id=plan.plan_id,
                pending_groups=[g.value for g in changeset.groups()],
            ) from e
        except ConcurrencyConflict:
            plan_sync_total.inc({"outcome": "conflict"})
            raise

        plan_sync_total.inc({"outcome": "synced"})
        if plan.pending_sync:
            self._refresh_pending_gauge()
        log_event(
            "info",
            "plan.sync.committed",
            plan_id=plan.plan_id,
            extra={"fields": sorted(changeset.present().keys())},
        )
        return self.get_plan(plan.plan_id)

    def _coerce_changeset(self, changeset: Union[PlanChangeset, Mapping[str, Any]]) -> PlanChangeset:
        if isinstance(changeset, PlanChangeset):
            return changeset
        try:
            return PlanChangeset(**dict(changeset))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid plan changeset: {e.errors()[0]['msg']}") from e

    def _validate(self, changeset: PlanChangeset) -> None:
        if not changeset.groups():
            raise ValidationError("Plan changeset is empty")
        if changeset.price is not None and changeset.price < 0:
            raise ValidationError("Plan price must not be negative", reason=ValidationReason.NEGATIVE_PRICE)
        if changeset.name is not None and not changeset.name.strip():
            raise ValidationError("Plan name must not be empty")

    def _check_name_available(self, plan_id: str, name: str) -> None:
        with get_db_session() as session:
            clash = session.execute(
                select(plans.c.plan_id).where(plans.c.name == name).where(plans.c.plan_id != plan_id)
            ).first()
        if clash:
            raise ValidationError(f"Plan name '{name}' is already used by plan {clash.plan_id}")

    def _check_external_identity(self, plan: SubscriptionPlan, groups: List[FieldGroup]) -> None:
        if groups and not plan.external_product_id:
            raise ValidationError(f"Plan {plan.plan_id} is not linked to a provider product")
        if FieldGroup.PRICE in groups and not plan.external_price_id:
            raise ValidationError(f"Plan {plan.plan_id} is not linked to a provider price")

    def _refresh_pending_gauge(self) -> None:
        with get_db_session() as session:
            count = session.execute(
                select(func.count()).select_from(plans).where(plans.c.pending_sync == True)  # noqa: E712
            ).scalar_one()
        plans_pending_sync.set(count)

    # -- account-facing --------------------------------------------------

    def assign_plan(self, account_id: str, plan_id: str) -> Account:
        """
        Move an account to another plan.

        The swipe-limit snapshot is recomputed from the new plan in the same
        row update as the plan reference.
        """
        plan = self.get_plan(plan_id)
        snapshot = swipe_limit_of(plan)
        with get_db_session() as session:
            result = session.execute(
                update(accounts)
                .where(accounts.c.account_id == account_id)
                .values(plan_id=plan.plan_id, swipe_limit_snapshot=snapshot)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"Account {account_id} not found")
            row = session.execute(select(accounts).where(accounts.c.account_id == account_id)).first()
        log_event("info", "account.plan.assigned", account_id=account_id, plan_id=plan.plan_id)
        return Account.model_validate(dict(row._mapping))

    def subscriber_counts(self) -> Dict[str, Any]:
        """
        Accounts per paid plan plus the total on any paid plan.

        Returns:
            {"plans": {"Silver Plan": 3, ...}, "total_subscribed": 5}
        """
        with get_db_session() as session:
            rows = session.execute(
                select(plans.c.name, func.count(accounts.c.account_id))
                .select_from(plans.outerjoin(accounts, accounts.c.plan_id == plans.c.plan_id))
                .where(plans.c.is_default == False)  # noqa: E712
                .group_by(plans.c.name)
                .order_by(plans.c.name)
            ).fetchall()
        counts = {name: int(count) for name, count in rows}
        return {"plans": counts, "total_subscribed": sum(counts.values())}
