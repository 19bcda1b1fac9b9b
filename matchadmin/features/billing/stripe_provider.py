"""
Stripe billing provider implementation.

Implements the BillingProvider protocol on an explicitly constructed
stripe.StripeClient; the module-global stripe.api_key is never touched, so
several handles (live/test keys, tests with doubles) can coexist.

Stripe prices are immutable. A plan's external price identifier is therefore
the price's lookup key: changing the amount creates a new Price that takes
over the lookup key and becomes the product's default price.
"""
import json
from contextlib import contextmanager
from typing import Dict, Any, List, Optional

import stripe

from matchadmin.core.config import settings
from matchadmin.core.errors import ExternalProviderError, ProviderErrorKind
from matchadmin.features.billing.provider import PaymentMethodSummary, SubscriptionSummary


def classify_stripe_error(exc: Exception) -> ProviderErrorKind:
    """Map a stripe exception onto the provider error taxonomy."""
    if isinstance(exc, stripe.APIConnectionError):
        text = str(exc).lower()
        if "timed out" in text or "timeout" in text:
            return ProviderErrorKind.TIMEOUT
        return ProviderErrorKind.NETWORK
    if isinstance(exc, stripe.RateLimitError):
        return ProviderErrorKind.RATE_LIMITED
    if isinstance(exc, stripe.AuthenticationError):
        return ProviderErrorKind.CONFIGURATION
    status = getattr(exc, "http_status", None)
    if isinstance(exc, stripe.APIError) or (status is not None and status >= 500):
        return ProviderErrorKind.SERVER
    return ProviderErrorKind.REJECTED


@contextmanager
def _stripe_call(operation: str):
    try:
        yield
    except stripe.StripeError as e:
        raise ExternalProviderError(
            f"Stripe {operation} failed: {e.user_message or e}",
            kind=classify_stripe_error(e),
            operation=operation,
        ) from e


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        client: Optional[Any] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            timeout: HTTP timeout in seconds for each request
            client: Pre-built StripeClient (tests pass a double here)
        """
        self._http_client = None
        if client is not None:
            self._client = client
            return

        secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not secret_key:
            raise ExternalProviderError(
                "STRIPE_SECRET_KEY not configured",
                kind=ProviderErrorKind.CONFIGURATION,
                operation="configure",
            )
        self._http_client = stripe.RequestsClient(
            timeout=timeout or settings.BILLING_PROVIDER_TIMEOUT_SECONDS
        )
        # Retries are decided by the adapter, per field group
        self._client = stripe.StripeClient(
            secret_key,
            http_client=self._http_client,
            max_network_retries=0,
        )

    def create_customer(self, email: str, display_name: Optional[str] = None, idempotency_key: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"email": email}
        if display_name:
            params["name"] = display_name
        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        with _stripe_call("create_customer"):
            customer = self._client.customers.create(params=params, options=options)
        return customer.id

    def update_product(self, product_id: str, name: Optional[str] = None, features: Optional[Dict[str, Any]] = None) -> None:
        params: Dict[str, Any] = {}
        if name is not None:
            params["name"] = name
        if features is not None:
            params["metadata"] = {"features": json.dumps(features, sort_keys=True, default=str)}
        if not params:
            return

        with _stripe_call("update_product"):
            self._client.products.update(product_id, params=params)

    def update_product_price(self, product_id: str, price_key: str, amount_minor_units: int, currency: str) -> None:
        with _stripe_call("update_product_price"):
            current = self._client.prices.list(
                params={"lookup_keys": [price_key], "active": True, "limit": 1}
            )
            existing = current.data[0] if current.data else None
            if (
                existing is not None
                and existing.get("unit_amount") == amount_minor_units
                and existing.get("currency") == currency
            ):
                target_id = existing.id
            else:
                replaced = existing.id if existing is not None else "none"
                price = self._client.prices.create(
                    params={
                        "product": product_id,
                        "unit_amount": amount_minor_units,
                        "currency": currency,
                        "recurring": {"interval": "month"},
                        "lookup_key": price_key,
                        "transfer_lookup_key": True,
                    },
                    # Keyed on the replaced price: A -> B -> A must create a fresh price
                    options={"idempotency_key": f"price:{price_key}:{replaced}:{amount_minor_units}:{currency}"},
                )
                target_id = price.id

            self._client.products.update(product_id, params={"default_price": target_id})
            if existing is not None and existing.id != target_id:
                self._client.prices.update(existing.id, params={"active": False})

    def set_product_active(self, product_id: str, active: bool) -> None:
        with _stripe_call("set_product_active"):
            self._client.products.update(product_id, params={"active": bool(active)})

    def list_subscriptions_for_customer(self, customer_id: str, expand_payment_method: bool = False) -> List[SubscriptionSummary]:
        params: Dict[str, Any] = {"customer": customer_id}
        if expand_payment_method:
            params["expand"] = ["data.default_payment_method"]

        with _stripe_call("list_subscriptions"):
            result = self._client.subscriptions.list(params=params)
        return [self._summarize(sub, expand_payment_method) for sub in result.data]

    def close(self) -> None:
        if self._http_client is not None and hasattr(self._http_client, "close"):
            self._http_client.close()

    def _summarize(self, sub: Dict[str, Any], expanded: bool) -> SubscriptionSummary:
        items = (sub.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}
        period_end = sub.get("current_period_end") or first_item.get("current_period_end")

        payment_method = None
        method = sub.get("default_payment_method")
        if expanded and isinstance(method, dict):
            card = method.get("card") or {}
            payment_method = PaymentMethodSummary(
                brand=card.get("brand"),
                last4=card.get("last4"),
                exp_month=card.get("exp_month"),
                exp_year=card.get("exp_year"),
            )

        return SubscriptionSummary(
            subscription_id=sub.get("id"),
            status=sub.get("status"),
            product_id=price.get("product"),
            price_id=price.get("id"),
            current_period_end=period_end,
            payment_method=payment_method,
            metadata=dict(sub.get("metadata") or {}),
        )
