"""
Billing engine lifecycle.

Builds the billing provider handle once and injects it into every component.
Open it on process startup, close it on shutdown:

    with BillingEngine.from_settings(settings) as engine:
        engine.catalog.sync_plan("gold", {"price": "24.99"})
"""
from __future__ import annotations

from typing import Optional

from matchadmin.core.config import Settings, settings as default_settings
from matchadmin.core.database import check_connection, create_all_tables, dispose_engine, init_engine
from matchadmin.core.logging import configure_logging
from matchadmin.features.accounts.provisioning import CustomerProvisioner
from matchadmin.features.accounts.service import AccountService
from matchadmin.features.activity.aggregator import ActivityAggregator
from matchadmin.features.activity.ledger import ActivityLedger
from matchadmin.features.billing.adapter import BillingProviderAdapter
from matchadmin.features.billing.provider import BillingProvider
from matchadmin.features.billing.reconcile_job import PlanReconciler
from matchadmin.features.billing.stripe_provider import StripeProvider
from matchadmin.features.notifications.queue import NotificationQueue, RQNotificationQueue
from matchadmin.features.plans.service import PlanCatalog


class BillingEngine:
    def __init__(
        self,
        provider: BillingProvider,
        notifications: NotificationQueue,
        *,
        config: Optional[Settings] = None,
        database_url: Optional[str] = None,
        create_tables: bool = False,
    ):
        self.config = config or default_settings
        self.provider = provider
        self.notifications = notifications
        self.database_url = database_url
        self.create_tables = create_tables
        self.adapter: Optional[BillingProviderAdapter] = None
        self._opened = False

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "BillingEngine":
        config = config or default_settings
        provider = StripeProvider(config.STRIPE_SECRET_KEY, timeout=config.BILLING_PROVIDER_TIMEOUT_SECONDS)
        notifications = RQNotificationQueue(config.REDIS_URL, config.NOTIFICATIONS_QUEUE)
        return cls(provider, notifications, config=config, database_url=config.DATABASE_URL)

    def open(self) -> "BillingEngine":
        if self._opened:
            return self
        configure_logging(self.config.ENV)
        init_engine(self.database_url)
        if not check_connection():
            dispose_engine()
            raise RuntimeError("Database is unreachable; billing engine not opened")
        if self.create_tables:
            create_all_tables()

        self.adapter = BillingProviderAdapter(
            self.provider,
            timeout=self.config.BILLING_PROVIDER_TIMEOUT_SECONDS,
            max_attempts=self.config.BILLING_SYNC_MAX_ATTEMPTS,
            backoff_base=self.config.BILLING_SYNC_BACKOFF_SECONDS,
            backoff_cap=self.config.BILLING_SYNC_BACKOFF_MAX_SECONDS,
            max_workers=self.config.BILLING_PROVIDER_MAX_WORKERS,
        )
        self.catalog = PlanCatalog(self.adapter, lease_seconds=self.config.PLAN_SYNC_LEASE_SECONDS)
        self.provisioner = CustomerProvisioner(self.catalog, self.adapter, self.notifications)
        self.accounts = AccountService(self.catalog, self.adapter)
        self.ledger = ActivityLedger()
        self.aggregator = ActivityAggregator()
        self.reconciler = PlanReconciler(self.catalog)
        self._opened = True
        return self

    def close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        self.adapter.close()
        self.notifications.close()
        dispose_engine()

    def __enter__(self) -> "BillingEngine":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
