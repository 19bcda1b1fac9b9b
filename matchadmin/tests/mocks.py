import threading
import time
from typing import Any, Callable, Dict, List, Optional

from matchadmin.core.errors import ExternalProviderError, ProviderErrorKind
from matchadmin.features.billing.provider import PaymentMethodSummary, SubscriptionSummary


class StripeObj(dict):
    """dict with attribute access, like stripe.StripeObject."""

    def __getattr__(self, key):
        try:
            return self[key]
        except KeyError:
            raise AttributeError(key) from None


class FakeBillingProvider:
    """In-memory BillingProvider with scripted failures, safe across threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self.customers: Dict[str, Dict[str, Any]] = {}
        self._customers_by_key: Dict[str, str] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, List[SubscriptionSummary]] = {}
        self.calls: List[tuple] = []
        self.delays: Dict[str, float] = {}
        self.hooks: Dict[str, Callable[..., None]] = {}
        self._failures: Dict[str, List[Optional[Exception]]] = {}
        self._always_fail: Dict[str, Exception] = {}
        self.closed = False

    # -- scripting ---------------------------------------------------------

    def add_product(self, product_id: str, name: str, price_key: str, amount: int, currency: str = "usd", features=None, active: bool = True):
        self.products[product_id] = {
            "name": name,
            "features": dict(features or {}),
            "active": active,
            "price_key": price_key,
            "amount": amount,
            "currency": currency,
        }

    def fail(self, operation: str, error: Optional[Exception] = None, times: Optional[int] = 1):
        """Make ``operation`` raise; ``times=None`` fails every call until cleared."""
        error = error or ExternalProviderError(f"{operation} unavailable", kind=ProviderErrorKind.SERVER)
        with self._lock:
            if times is None:
                self._always_fail[operation] = error
            else:
                self._failures.setdefault(operation, []).extend([error] * times)

    def clear_failures(self):
        with self._lock:
            self._failures.clear()
            self._always_fail.clear()

    def call_names(self) -> List[str]:
        with self._lock:
            return [name for name, _ in self.calls]

    def calls_to(self, operation: str) -> List[tuple]:
        with self._lock:
            return [args for name, args in self.calls if name == operation]

    def _enter(self, operation: str, *args):
        with self._lock:
            self.calls.append((operation, args))
            error = self._always_fail.get(operation)
            if error is None and self._failures.get(operation):
                error = self._failures[operation].pop(0)
        hook = self.hooks.get(operation)
        if hook:
            hook(*args)
        delay = self.delays.get(operation)
        if delay:
            time.sleep(delay)
        if error is not None:
            raise error

    # -- BillingProvider -----------------------------------------------------

    def create_customer(self, email, display_name=None, idempotency_key=None):
        self._enter("create_customer", email, display_name, idempotency_key)
        with self._lock:
            if idempotency_key and idempotency_key in self._customers_by_key:
                return self._customers_by_key[idempotency_key]
            customer_id = f"cus_{len(self.customers) + 1:04d}"
            self.customers[customer_id] = {"email": email, "name": display_name}
            if idempotency_key:
                self._customers_by_key[idempotency_key] = customer_id
            return customer_id

    def update_product(self, product_id, name=None, features=None):
        self._enter("update_product", product_id, name, features)
        with self._lock:
            product = self.products[product_id]
            if name is not None:
                product["name"] = name
            if features is not None:
                product["features"] = dict(features)

    def update_product_price(self, product_id, price_key, amount_minor_units, currency):
        self._enter("update_product_price", product_id, price_key, amount_minor_units, currency)
        with self._lock:
            product = self.products[product_id]
            product["price_key"] = price_key
            product["amount"] = amount_minor_units
            product["currency"] = currency

    def set_product_active(self, product_id, active):
        self._enter("set_product_active", product_id, active)
        with self._lock:
            self.products[product_id]["active"] = active

    def list_subscriptions_for_customer(self, customer_id, expand_payment_method=False):
        self._enter("list_subscriptions_for_customer", customer_id, expand_payment_method)
        subs = list(self.subscriptions.get(customer_id, []))
        if expand_payment_method:
            return subs
        return [
            SubscriptionSummary(
                subscription_id=s.subscription_id,
                status=s.status,
                product_id=s.product_id,
                price_id=s.price_id,
                current_period_end=s.current_period_end,
                metadata=s.metadata,
            )
            for s in subs
        ]

    def close(self):
        self.closed = True


def visa_subscription(subscription_id: str = "sub_1", product_id: str = "prod_gold") -> SubscriptionSummary:
    return SubscriptionSummary(
        subscription_id=subscription_id,
        status="active",
        product_id=product_id,
        price_id="price_1",
        current_period_end=1735689600,
        payment_method=PaymentMethodSummary(brand="visa", last4="4242", exp_month=12, exp_year=2030),
    )


class RecordingSender:
    """Mail sender double: keeps messages, optionally fails."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.messages = []

    def __call__(self, message):
        if self.error is not None:
            raise self.error
        self.messages.append(message)
