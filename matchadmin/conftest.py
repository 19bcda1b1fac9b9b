# matchadmin/conftest.py
import pytest

from matchadmin.core.database import create_all_tables, dispose_engine, init_engine
from matchadmin.core.metrics import METRICS
from matchadmin.features.accounts.provisioning import CustomerProvisioner
from matchadmin.features.accounts.service import AccountService
from matchadmin.features.billing.adapter import BillingProviderAdapter
from matchadmin.features.notifications.queue import InlineNotificationQueue
from matchadmin.features.plans.service import DEFAULT_PLANS, PlanCatalog
from matchadmin.tests.mocks import FakeBillingProvider, RecordingSender


@pytest.fixture(scope="function", autouse=True)
def database(tmp_path):
    """
    Fresh SQLite database file per test.

    A file (not :memory:) so worker threads in concurrency tests get their
    own connections to the same database.
    """
    url = f"sqlite:///{tmp_path / 'matchadmin.db'}"
    init_engine(url)
    create_all_tables()
    yield url
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def adapter(provider):
    adapter = BillingProviderAdapter(
        provider,
        timeout=2.0,
        max_attempts=3,
        backoff_base=0.0,
        backoff_cap=0.0,
        max_workers=8,
        sleep=lambda seconds: None,
    )
    yield adapter
    adapter.close()


@pytest.fixture
def catalog(adapter, provider):
    """Seeded catalog; every plan is linked to a product in the fake provider."""
    catalog = PlanCatalog(adapter)
    catalog.seed_plans()
    for plan_id, config in DEFAULT_PLANS.items():
        product_id = f"prod_{plan_id}"
        price_key = f"{plan_id}_monthly"
        catalog.link_external_ids(plan_id, product_id, price_key)
        provider.add_product(product_id, config["name"], price_key, config["price_minor_units"], features=config["features"])
    return catalog


@pytest.fixture
def mail_sender():
    return RecordingSender()


@pytest.fixture
def notifications(mail_sender):
    return InlineNotificationQueue(sender=mail_sender)


@pytest.fixture
def provisioner(catalog, adapter, notifications):
    return CustomerProvisioner(catalog, adapter, notifications)


@pytest.fixture
def account_service(catalog, adapter):
    return AccountService(catalog, adapter)
