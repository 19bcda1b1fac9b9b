"""
Tests for BillingProviderAdapter call discipline: timeout, retry, metrics.
"""

import pytest

from matchadmin.core.errors import ExternalProviderError, ProviderErrorKind
from matchadmin.core.metrics import billing_provider_calls_total
from matchadmin.features.billing.adapter import BillingProviderAdapter, compute_backoff
from matchadmin.tests.mocks import FakeBillingProvider


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_adapter(provider, sleeps):
    created = []

    def _make(**kwargs):
        options = dict(timeout=1.0, max_attempts=3, backoff_base=0.5, backoff_cap=1.5, sleep=sleeps.append)
        options.update(kwargs)
        adapter = BillingProviderAdapter(provider, **options)
        created.append(adapter)
        return adapter

    yield _make
    for adapter in created:
        adapter.close()


def test_compute_backoff_is_exponential_and_capped():
    assert [compute_backoff(a, 0.5, 3.0) for a in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_successful_call_passes_through(make_adapter, provider):
    provider.add_product("prod_1", "One", "one_monthly", 100)

    make_adapter().update_product("prod_1", name="Uno")

    assert provider.products["prod_1"]["name"] == "Uno"
    assert billing_provider_calls_total.value({"operation": "update_product", "outcome": "ok"}) == 1


def test_slow_call_times_out(make_adapter, provider):
    provider.add_product("prod_1", "One", "one_monthly", 100)
    provider.delays["set_product_active"] = 0.5

    with pytest.raises(ExternalProviderError) as excinfo:
        make_adapter(timeout=0.05, max_attempts=1).set_product_active("prod_1", False)

    assert excinfo.value.kind is ProviderErrorKind.TIMEOUT
    assert excinfo.value.retryable is True
    assert excinfo.value.operation == "set_product_active"
    assert excinfo.value.status_code == 504


def test_timed_out_call_is_not_resubmitted_while_running(make_adapter, provider, sleeps):
    provider.add_product("prod_1", "One", "one_monthly", 100)
    provider.delays["set_product_active"] = 0.5

    with pytest.raises(ExternalProviderError) as excinfo:
        make_adapter(timeout=0.05, max_attempts=3).set_product_active("prod_1", False)

    assert excinfo.value.kind is ProviderErrorKind.TIMEOUT
    assert excinfo.value.in_flight is not None
    assert len(provider.calls_to("set_product_active")) == 1
    assert sleeps == [0.5]

    excinfo.value.in_flight.result(timeout=5)
    assert provider.products["prod_1"]["active"] is False


def test_retryable_errors_are_retried_with_backoff(make_adapter, provider, sleeps):
    provider.add_product("prod_1", "One", "one_monthly", 100)
    provider.fail("update_product_price", ExternalProviderError("slow down", kind=ProviderErrorKind.RATE_LIMITED), times=2)

    make_adapter().update_product_price("prod_1", "one_monthly", 200, "usd")

    assert provider.products["prod_1"]["amount"] == 200
    assert sleeps == [0.5, 1.0]


def test_retries_stop_at_max_attempts(make_adapter, provider, sleeps):
    provider.add_product("prod_1", "One", "one_monthly", 100)
    provider.fail("update_product", times=None)

    with pytest.raises(ExternalProviderError) as excinfo:
        make_adapter(max_attempts=4).update_product("prod_1", name="x")

    assert excinfo.value.kind is ProviderErrorKind.SERVER
    assert len(provider.calls_to("update_product")) == 4
    assert sleeps == [0.5, 1.0, 1.5]


def test_rejections_are_not_retried(make_adapter, provider, sleeps):
    provider.fail("set_product_active", ExternalProviderError("no such product", kind=ProviderErrorKind.REJECTED))

    with pytest.raises(ExternalProviderError):
        make_adapter().set_product_active("prod_missing", True)

    assert len(provider.calls_to("set_product_active")) == 1
    assert sleeps == []


def test_create_customer_is_never_retried(make_adapter, provider, sleeps):
    provider.fail("create_customer", times=None)

    with pytest.raises(ExternalProviderError):
        make_adapter().create_customer("a@x.com", "Ada", idempotency_key="k1")

    assert len(provider.calls_to("create_customer")) == 1
    assert sleeps == []


def test_os_errors_become_network_errors(make_adapter, provider):
    provider.fail("list_subscriptions_for_customer", ConnectionResetError("reset by peer"), times=None)

    with pytest.raises(ExternalProviderError) as excinfo:
        make_adapter(max_attempts=2).list_subscriptions_for_customer("cus_1")

    assert excinfo.value.kind is ProviderErrorKind.NETWORK
    assert isinstance(excinfo.value.__cause__, ConnectionResetError)
    assert billing_provider_calls_total.value({"operation": "list_subscriptions", "outcome": "network"}) == 2


def test_close_releases_provider_and_rejects_new_calls(sleeps):
    provider = FakeBillingProvider()
    adapter = BillingProviderAdapter(provider, timeout=1.0, sleep=sleeps.append)

    adapter.close()
    adapter.close()

    assert provider.closed is True
    with pytest.raises(ExternalProviderError) as excinfo:
        adapter.create_customer("a@x.com")
    assert excinfo.value.kind is ProviderErrorKind.CONFIGURATION
