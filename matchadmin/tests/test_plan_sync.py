"""
Tests for staged plan synchronization (PlanCatalog.sync_plan) and the
pending-sync reconciliation pass.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from matchadmin.core.database import get_db_session, plans
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
from matchadmin.core.metrics import billing_provider_calls_total, plan_sync_total, plans_pending_sync
from matchadmin.features.billing.reconcile_job import PlanReconciler
from matchadmin.models.plan import FieldGroup


def _rejected(message="rejected by provider"):
    return ExternalProviderError(message, kind=ProviderErrorKind.REJECTED)


def _set_lease(plan_id, expires_at):
    with get_db_session() as session:
        session.execute(update(plans).where(plans.c.plan_id == plan_id).values(sync_lease_expires_at=expires_at))


def _wait_for_lease_release(plan_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        with get_db_session() as session:
            expires_at = session.execute(
                select(plans.c.sync_lease_expires_at).where(plans.c.plan_id == plan_id)
            ).scalar_one()
        if expires_at is None:
            return
        time.sleep(0.02)
    raise AssertionError(f"sync lease on {plan_id} still held after {timeout}s")


def test_price_only_change_leaves_other_fields_untouched(catalog, provider):
    """A price edit touches only the price, locally and at the provider."""
    before = catalog.get_plan("silver")

    updated = catalog.sync_plan("silver", {"price": Decimal("9.49")})

    assert updated.price_minor_units == 949
    assert updated.price == Decimal("9.49")
    assert updated.name == before.name
    assert updated.features == before.features
    assert updated.available == before.available
    assert updated.pending_sync is False

    assert provider.call_names() == ["update_product_price"]
    product = provider.products["prod_silver"]
    assert product["amount"] == 949
    assert product["name"] == "Silver Plan"
    assert product["active"] is True
    assert product["features"] == before.features


def test_price_is_rounded_half_up_to_minor_units(catalog, provider):
    updated = catalog.sync_plan("gold", {"price": "9.995"})

    assert updated.price_minor_units == 1000
    assert provider.calls_to("update_product_price") == [("prod_gold", "gold_monthly", 1000, "usd")]


def test_full_changeset_syncs_groups_in_order(catalog, provider):
    updated = catalog.sync_plan(
        "gold",
        {"name": "Gold Plus", "features": {"swipeLimit": 2000}, "price": Decimal("24.99"), "available": False},
    )

    assert provider.call_names() == ["update_product", "update_product_price", "set_product_active"]
    assert updated.name == "Gold Plus"
    assert updated.features == {"swipeLimit": 2000}
    assert updated.price_minor_units == 2499
    assert updated.available is False
    assert plan_sync_total.value({"outcome": "synced"}) == 1


def test_explicit_none_fields_are_absent(catalog, provider):
    updated = catalog.sync_plan("gold", {"name": None, "available": False, "price": None})

    assert provider.call_names() == ["set_product_active"]
    assert updated.name == "Gold Plan"
    assert updated.available is False


def test_availability_failure_after_earlier_groups_marks_pending(catalog, provider):
    """Product and price reach the provider, availability fails: plan goes pending-sync."""
    provider.fail("set_product_active", times=None)

    with pytest.raises(ConsistencyError) as excinfo:
        catalog.sync_plan("silver", {"name": "Silver Plus", "price": Decimal("12.99"), "available": False})

    err = excinfo.value
    assert err.plan_id == "silver"
    assert err.pending_groups == ["availability"]
    assert isinstance(err.__cause__, ExternalProviderError)
    assert err.__cause__.field_group == "availability"

    plan = catalog.get_plan("silver")
    assert plan.name == "Silver Plan"
    assert plan.price_minor_units == 999
    assert plan.available is True
    assert plan.pending_sync is True
    assert plan.pending_groups == [FieldGroup.AVAILABILITY]

    stored = catalog.pending_changeset("silver")
    assert stored.name == "Silver Plus"
    assert stored.price == Decimal("12.99")
    assert stored.available is False

    # Earlier groups did reach the provider
    assert provider.products["prod_silver"]["name"] == "Silver Plus"
    assert provider.products["prod_silver"]["amount"] == 1299
    assert provider.products["prod_silver"]["active"] is True

    # Retryable failure was retried up to the attempt limit
    assert len(provider.calls_to("set_product_active")) == 3
    assert plans_pending_sync.value() == 1


def test_first_group_failure_changes_nothing(catalog, provider):
    provider.fail("update_product", _rejected())
    before = catalog.get_plan("gold")

    with pytest.raises(ExternalProviderError) as excinfo:
        catalog.sync_plan("gold", {"name": "Gold Max", "price": "30.00"})

    assert excinfo.value.field_group == "product"
    assert excinfo.value.kind is ProviderErrorKind.REJECTED
    assert provider.call_names() == ["update_product"]

    plan = catalog.get_plan("gold")
    assert plan.name == before.name
    assert plan.price_minor_units == before.price_minor_units
    assert plan.pending_sync is False

    # Lease was released: the next sync goes through
    assert catalog.sync_plan("gold", {"name": "Gold Max"}).name == "Gold Max"


def test_rejected_group_is_not_retried(catalog, provider):
    provider.fail("update_product_price", _rejected())

    with pytest.raises(ExternalProviderError):
        catalog.sync_plan("gold", {"price": "30.00"})

    assert len(provider.calls_to("update_product_price")) == 1


def test_transient_failures_are_retried_until_success(catalog, provider):
    provider.fail("update_product_price", times=2)

    updated = catalog.sync_plan("gold", {"price": "21.00"})

    assert updated.price_minor_units == 2100
    assert len(provider.calls_to("update_product_price")) == 3
    assert billing_provider_calls_total.value({"operation": "update_product_price", "outcome": "server"}) == 2
    assert billing_provider_calls_total.value({"operation": "update_product_price", "outcome": "ok"}) == 1


@pytest.mark.parametrize(
    "changeset",
    [
        {},
        {"name": "   "},
        {"bogus": 1},
        {"price": "not-a-number"},
    ],
)
def test_invalid_changesets_are_rejected_before_any_call(catalog, provider, changeset):
    with pytest.raises(ValidationError):
        catalog.sync_plan("gold", changeset)
    assert provider.calls == []


def test_negative_price_is_rejected(catalog, provider):
    with pytest.raises(ValidationError) as excinfo:
        catalog.sync_plan("gold", {"price": Decimal("-1.00")})

    assert excinfo.value.reason is ValidationReason.NEGATIVE_PRICE
    assert provider.calls == []


def test_duplicate_plan_name_is_rejected(catalog, provider):
    with pytest.raises(ValidationError):
        catalog.sync_plan("silver", {"name": "Gold Plan"})
    assert provider.calls == []


def test_unknown_plan_raises_not_found(catalog):
    with pytest.raises(NotFoundError):
        catalog.sync_plan("diamond", {"name": "Diamond"})


def test_expected_version_mismatch_conflicts(catalog, provider):
    plan = catalog.get_plan("gold")

    with pytest.raises(ConcurrencyConflict):
        catalog.sync_plan("gold", {"name": "Gold 2"}, expected_version=plan.version + 5)
    assert provider.calls == []

    updated = catalog.sync_plan("gold", {"name": "Gold 2"}, expected_version=plan.version)
    assert updated.version > plan.version


def test_held_lease_blocks_sync(catalog, provider):
    _set_lease("gold", datetime.now(timezone.utc) + timedelta(hours=1))

    with pytest.raises(ConcurrencyConflict):
        catalog.sync_plan("gold", {"name": "Gold 2"})
    assert provider.calls == []


def test_expired_lease_is_taken_over(catalog):
    _set_lease("gold", datetime.now(timezone.utc) - timedelta(minutes=1))

    assert catalog.sync_plan("gold", {"name": "Gold 2"}).name == "Gold 2"


def test_concurrent_syncs_on_same_plan_are_serialized(catalog, provider):
    provider.delays["update_product"] = 0.3
    barrier = threading.Barrier(2)
    results, errors = [], []

    def worker(index):
        barrier.wait()
        try:
            results.append(catalog.sync_plan("gold", {"name": f"Gold {index}"}))
        except ConcurrencyConflict as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 1
    assert len(errors) == 1
    assert len(provider.calls_to("update_product")) == 1
    assert catalog.get_plan("gold").name == results[0].name


def test_syncs_on_different_plans_are_independent(catalog, provider):
    provider.delays["update_product"] = 0.2
    results = {}

    def worker(plan_id):
        results[plan_id] = catalog.sync_plan(plan_id, {"name": f"{plan_id} renamed"})

    threads = [threading.Thread(target=worker, args=(p,)) for p in ("silver", "gold")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results["silver"].name == "silver renamed"
    assert results["gold"].name == "gold renamed"


def test_cancel_before_any_call(catalog, provider):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(OperationCancelled):
        catalog.sync_plan("gold", {"name": "Gold 2"}, cancel_event=cancel)

    assert provider.calls == []
    assert catalog.get_plan("gold").pending_sync is False
    assert catalog.sync_plan("gold", {"name": "Gold 2"}).name == "Gold 2"


def test_cancel_between_groups_marks_pending(catalog, provider):
    cancel = threading.Event()
    provider.hooks["update_product"] = lambda *args: cancel.set()

    with pytest.raises(ConsistencyError) as excinfo:
        catalog.sync_plan("gold", {"name": "Gold X", "price": "25.00"}, cancel_event=cancel)

    assert excinfo.value.pending_groups == ["price"]
    assert provider.call_names() == ["update_product"]
    plan = catalog.get_plan("gold")
    assert plan.pending_sync is True
    assert plan.name == "Gold Plan"


def test_timed_out_call_holds_plan_until_it_settles(catalog, adapter, provider):
    """A call that outlives the adapter timeout may still land; nothing may overtake it."""
    adapter.timeout = 0.2
    adapter.max_attempts = 1
    gate = threading.Event()
    provider.hooks["update_product"] = lambda *args: gate.wait(5)

    with pytest.raises(ConsistencyError) as excinfo:
        catalog.sync_plan("silver", {"name": "Old Writer"})

    assert excinfo.value.pending_groups == ["product"]
    assert excinfo.value.__cause__.kind is ProviderErrorKind.TIMEOUT
    assert catalog.get_plan("silver").pending_sync is True
    with pytest.raises(ConcurrencyConflict):
        catalog.sync_plan("silver", {"name": "New Writer"})

    del provider.hooks["update_product"]
    gate.set()
    _wait_for_lease_release("silver")
    assert provider.products["prod_silver"]["name"] == "Old Writer"

    updated = catalog.sync_plan("silver", {"name": "New Writer"})

    assert updated.name == "New Writer"
    assert updated.pending_sync is False
    assert provider.products["prod_silver"]["name"] == "New Writer"


def test_new_sync_on_pending_plan_completes_earlier_groups(catalog, provider):
    provider.fail("set_product_active", times=None)
    with pytest.raises(ConsistencyError):
        catalog.sync_plan("silver", {"name": "Silver Plus", "price": "12.99", "available": False})
    provider.clear_failures()

    updated = catalog.sync_plan("silver", {"features": {"swipeLimit": 300}})

    assert updated.pending_sync is False
    assert updated.pending_groups == []
    assert updated.name == "Silver Plus"
    assert updated.price_minor_units == 1299
    assert updated.available is False
    assert updated.features == {"swipeLimit": 300}
    assert provider.products["prod_silver"]["active"] is False
    assert catalog.pending_changeset("silver") is None
    assert plans_pending_sync.value() == 0


def test_reconciler_retries_only_pending_groups(catalog, provider):
    provider.fail("set_product_active", times=None)
    with pytest.raises(ConsistencyError):
        catalog.sync_plan("silver", {"name": "Silver Plus", "price": "12.99", "available": False})
    provider.clear_failures()
    calls_before = len(provider.calls)

    report = PlanReconciler(catalog).run()

    assert report["resolved"] == ["silver"]
    assert report["still_pending"] == []
    assert [name for name, _ in provider.calls[calls_before:]] == ["set_product_active"]

    plan = catalog.get_plan("silver")
    assert plan.pending_sync is False
    assert plan.name == "Silver Plus"
    assert plan.price_minor_units == 1299
    assert plan.available is False


def test_reconciler_keeps_plan_pending_when_provider_still_fails(catalog, provider):
    provider.fail("set_product_active", times=None)
    with pytest.raises(ConsistencyError):
        catalog.sync_plan("silver", {"price": "12.99", "available": False})

    report = PlanReconciler(catalog).run()

    assert report["resolved"] == []
    assert [item["plan_id"] for item in report["still_pending"]] == ["silver"]
    plan = catalog.get_plan("silver")
    assert plan.pending_sync is True
    assert plan.pending_groups == [FieldGroup.AVAILABILITY]
    assert plan.price_minor_units == 999


def test_reconciler_with_nothing_pending(catalog, provider):
    report = PlanReconciler(catalog).run()

    assert report["plans_checked"] == 0
    assert provider.calls == []
