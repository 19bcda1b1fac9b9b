"""
matchadmin/features/accounts/service.py

Account reads and edits for the admin back office:
- account lookup
- partial preference updates
- billing summary (provider subscriptions + card details for paid plans)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select, update

from matchadmin.core.database import accounts, get_db_session, preferences
from matchadmin.core.errors import NotFoundError, ValidationError
from matchadmin.core.logging import log_event
from matchadmin.features.billing.adapter import BillingProviderAdapter
from matchadmin.features.billing.provider import PaymentMethodSummary, SubscriptionSummary
from matchadmin.features.plans.service import PlanCatalog
from matchadmin.models.account import Account, Preference
from matchadmin.models.plan import SubscriptionPlan


@dataclass(frozen=True)
class BillingSummary:
    account: Account
    plan: SubscriptionPlan
    subscriptions: List[SubscriptionSummary] = field(default_factory=list)

    @property
    def payment_method(self) -> Optional[PaymentMethodSummary]:
        for subscription in self.subscriptions:
            if subscription.payment_method is not None:
                return subscription.payment_method
        return None


def _row_to_account(row) -> Account:
    return Account.model_validate(dict(row._mapping))


class AccountService:
    def __init__(self, catalog: PlanCatalog, adapter: BillingProviderAdapter):
        self.catalog = catalog
        self.adapter = adapter

    def get_account(self, account_id: str) -> Account:
        with get_db_session() as session:
            row = session.execute(select(accounts).where(accounts.c.account_id == account_id)).first()
        if not row:
            raise NotFoundError(f"Account {account_id} not found")
        return _row_to_account(row)

    def get_preferences(self, account_id: str) -> Preference:
        account = self.get_account(account_id)
        with get_db_session() as session:
            row = session.execute(
                select(preferences).where(preferences.c.preference_id == account.preference_id)
            ).first()
        if not row:
            raise NotFoundError(f"Preferences for account {account_id} not found")
        return Preference(preference_id=row.preference_id, account_id=row.account_id, data=dict(row.data or {}))

    def update_preferences(self, account_id: str, changes: Mapping[str, Any]) -> Preference:
        """
        Merge ``changes`` into the account's preference data.

        Keys not in ``changes`` keep their stored values; a key set to None
        is removed.
        """
        if not isinstance(changes, Mapping) or not changes:
            raise ValidationError("Preference changes must be a non-empty mapping")

        account = self.get_account(account_id)
        with get_db_session() as session:
            row = session.execute(
                select(preferences)
                .where(preferences.c.preference_id == account.preference_id)
                .with_for_update()
            ).first()
            if not row:
                raise NotFoundError(f"Preferences for account {account_id} not found")

            data: Dict[str, Any] = dict(row.data or {})
            for key, value in changes.items():
                if value is None:
                    data.pop(key, None)
                else:
                    data[key] = value
            session.execute(
                update(preferences)
                .where(preferences.c.preference_id == row.preference_id)
                .values(data=data)
            )

        log_event("info", "account.preferences.updated", account_id=account_id, extra={"keys": sorted(changes.keys())})
        return Preference(preference_id=row.preference_id, account_id=row.account_id, data=data)

    def billing_summary(self, account_id: str) -> BillingSummary:
        """
        Account with its plan and, for paid plans, provider subscriptions.

        Accounts on the default plan (or without a billing customer) do not
        trigger a provider call.
        """
        account = self.get_account(account_id)
        plan = self.catalog.get_plan(account.plan_id)
        if plan.is_default or not account.external_customer_id:
            return BillingSummary(account=account, plan=plan)

        subscriptions = self.adapter.list_subscriptions_for_customer(
            account.external_customer_id,
            expand_payment_method=True,
        )
        return BillingSummary(account=account, plan=plan, subscriptions=list(subscriptions))
