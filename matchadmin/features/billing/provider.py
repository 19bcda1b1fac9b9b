"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing catalog or provisioning logic.

Implementations raise matchadmin.core.errors.ExternalProviderError for every
failure, classified by kind so callers can tell retryable failures apart.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PaymentMethodSummary:
    """Card details safe to show in the admin UI."""
    brand: Optional[str]
    last4: Optional[str]
    exp_month: Optional[int]
    exp_year: Optional[int]


@dataclass(frozen=True)
class SubscriptionSummary:
    """One provider subscription for a customer."""
    subscription_id: str
    status: Optional[str]
    product_id: Optional[str]
    price_id: Optional[str]
    current_period_end: Optional[int]
    payment_method: Optional[PaymentMethodSummary] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Every product-side method is keyed by the plan's stable external product
    identifier and is safe to repeat with the same arguments.
    """

    def create_customer(self, email: str, display_name: Optional[str] = None, idempotency_key: Optional[str] = None) -> str:
        """
        Create a billing customer.

        Args:
            email: Customer email (the provider-side identity)
            display_name: Customer name (optional)
            idempotency_key: Provider-side de-duplication key (optional)

        Returns:
            Provider customer ID
        """
        ...

    def update_product(self, product_id: str, name: Optional[str] = None, features: Optional[Dict[str, Any]] = None) -> None:
        """Update product name and/or feature metadata; absent arguments are not sent."""
        ...

    def update_product_price(self, product_id: str, price_key: str, amount_minor_units: int, currency: str) -> None:
        """Make ``amount_minor_units`` the product's current price under the stable ``price_key``."""
        ...

    def set_product_active(self, product_id: str, active: bool) -> None:
        """Toggle product availability."""
        ...

    def list_subscriptions_for_customer(self, customer_id: str, expand_payment_method: bool = False) -> List[SubscriptionSummary]:
        """List a customer's subscriptions, optionally with payment method details."""
        ...

    def close(self) -> None:
        """Release network resources."""
        ...
