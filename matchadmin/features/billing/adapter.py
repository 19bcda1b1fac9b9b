"""
Billing provider adapter.

The only component that performs provider calls. Adds, around any
BillingProvider:
- a bounded timeout per call (timeout -> ExternalProviderError(kind=TIMEOUT))
- bounded retry with exponential backoff for idempotent product-side calls,
  never while a timed-out attempt is still running
- per-call metrics and structured failure logs

Customer creation is single-shot: retrying it is the caller's
decision, gated by the provisioning uniqueness check.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Optional

from matchadmin.core.config import settings
from matchadmin.core.errors import ExternalProviderError, ProviderErrorKind
from matchadmin.core.logging import log_event
from matchadmin.core.metrics import billing_provider_calls_total
from matchadmin.features.billing.provider import BillingProvider, SubscriptionSummary


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped."""
    return min(base * (2 ** attempt), cap)


class BillingProviderAdapter:
    def __init__(
        self,
        provider: BillingProvider,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_cap: Optional[float] = None,
        max_workers: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.timeout = timeout if timeout is not None else settings.BILLING_PROVIDER_TIMEOUT_SECONDS
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.BILLING_SYNC_MAX_ATTEMPTS)
        self.backoff_base = backoff_base if backoff_base is not None else settings.BILLING_SYNC_BACKOFF_SECONDS
        self.backoff_cap = backoff_cap if backoff_cap is not None else settings.BILLING_SYNC_BACKOFF_MAX_SECONDS
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.BILLING_PROVIDER_MAX_WORKERS,
            thread_name_prefix="billing-provider",
        )
        self._closed = False

    # -- provider operations ------------------------------------------------

    def create_customer(self, email: str, display_name: Optional[str] = None, idempotency_key: Optional[str] = None) -> str:
        return self._call(
            "create_customer",
            self.provider.create_customer,
            email,
            display_name,
            idempotency_key,
        )

    def update_product(self, product_id: str, name: Optional[str] = None, features: Optional[Dict[str, Any]] = None) -> None:
        self._call_with_retry("update_product", self.provider.update_product, product_id, name, features)

    def update_product_price(self, product_id: str, price_key: str, amount_minor_units: int, currency: str) -> None:
        self._call_with_retry(
            "update_product_price",
            self.provider.update_product_price,
            product_id,
            price_key,
            amount_minor_units,
            currency,
        )

    def set_product_active(self, product_id: str, active: bool) -> None:
        self._call_with_retry("set_product_active", self.provider.set_product_active, product_id, active)

    def list_subscriptions_for_customer(self, customer_id: str, expand_payment_method: bool = False) -> List[SubscriptionSummary]:
        return self._call_with_retry(
            "list_subscriptions",
            self.provider.list_subscriptions_for_customer,
            customer_id,
            expand_payment_method,
        )

    def close(self) -> None:
        """Wait for in-flight calls to finish, then release the provider."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        self.provider.close()

    # -- call discipline ----------------------------------------------------

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        if self._closed:
            raise ExternalProviderError(
                "billing adapter is closed",
                kind=ProviderErrorKind.CONFIGURATION,
                operation=operation,
            )
        future = self._executor.submit(fn, *args)
        try:
            result = future.result(timeout=self.timeout)
        except FutureTimeout:
            # The running call is not interrupted and may still reach the provider
            billing_provider_calls_total.inc({"operation": operation, "outcome": ProviderErrorKind.TIMEOUT.value})
            error = ExternalProviderError(
                f"{operation} timed out after {self.timeout}s",
                kind=ProviderErrorKind.TIMEOUT,
                operation=operation,
            )
            error.in_flight = future
            raise error
        except ExternalProviderError as e:
            if e.operation is None:
                e.operation = operation
            billing_provider_calls_total.inc({"operation": operation, "outcome": e.kind.value})
            raise
        except OSError as e:
            billing_provider_calls_total.inc({"operation": operation, "outcome": ProviderErrorKind.NETWORK.value})
            raise ExternalProviderError(
                f"{operation} failed: {e}",
                kind=ProviderErrorKind.NETWORK,
                operation=operation,
            ) from e
        billing_provider_calls_total.inc({"operation": operation, "outcome": "ok"})
        return result

    def _call_with_retry(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        attempt = 0
        while True:
            try:
                return self._call(operation, fn, *args)
            except ExternalProviderError as e:
                attempt += 1
                if not e.retryable or attempt >= self.max_attempts:
                    log_event(
                        "warning",
                        "billing.provider.failed",
                        event_type=operation,
                        error_code=e.kind.value,
                        extra={"attempts": attempt, "error_message": e.message},
                    )
                    raise
                delay = compute_backoff(attempt - 1, self.backoff_base, self.backoff_cap)
                log_event(
                    "info",
                    "billing.provider.retry",
                    event_type=operation,
                    error_code=e.kind.value,
                    extra={"attempt": attempt, "delay_seconds": delay},
                )
                self._sleep(delay)
                if e.in_flight is not None and not e.in_flight.done():
                    # Never resubmit while an earlier attempt can still land
                    log_event(
                        "warning",
                        "billing.provider.failed",
                        event_type=operation,
                        error_code=e.kind.value,
                        extra={"attempts": attempt, "error_message": e.message, "in_flight": True},
                    )
                    raise
