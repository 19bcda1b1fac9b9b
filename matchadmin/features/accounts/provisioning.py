"""
Customer provisioning.

Creates an account together with its billing-provider customer:

1. uniqueness check on email OR phone
2. claim both identities (idempotency_keys) so concurrent retries cannot both proceed
3. bcrypt the credential
4. snapshot the default plan's swipe limit
5. create the provider customer (single shot, deterministic idempotency key)
6. persist preference + account in one transaction
7. enqueue the welcome notification (best effort)

Nothing is persisted unless step 5 succeeds.
"""

import hashlib
import uuid
from datetime import datetime, timezone
from threading import Event
from typing import Any, List, Mapping, Optional, Union

import bcrypt
import pydantic
from sqlalchemy import insert, or_, select
from sqlalchemy.exc import IntegrityError

from matchadmin.core.config import settings
from matchadmin.core.database import accounts, get_db_session, preferences
from matchadmin.core.errors import (
    ExternalProviderError,
    OperationCancelled,
    ValidationError,
    ValidationReason,
)
from matchadmin.core.idempotency import claim_keys, release_keys
from matchadmin.core.logging import log_event
from matchadmin.core.metrics import provisioning_total
from matchadmin.features.billing.adapter import BillingProviderAdapter
from matchadmin.features.notifications.queue import NotificationQueue
from matchadmin.features.plans.service import PlanCatalog, swipe_limit_of
from matchadmin.models.account import Account, ProvisionCandidate


CLAIM_SCOPE = "provision"


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """Hash a credential with bcrypt."""
    salt = bcrypt.gensalt(rounds=rounds or settings.PASSWORD_HASH_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a credential against stored hash."""
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


def customer_idempotency_key(email: str) -> str:
    """Provider-side de-duplication key; same email -> same key."""
    return "customer:" + hashlib.sha256(email.encode("utf-8")).hexdigest()[:40]


def identity_claim_keys(candidate: ProvisionCandidate) -> List[str]:
    return [f"{CLAIM_SCOPE}:email:{candidate.email}", f"{CLAIM_SCOPE}:phone:{candidate.phone}"]


class CustomerProvisioner:
    def __init__(self, catalog: PlanCatalog, adapter: BillingProviderAdapter, notifications: NotificationQueue):
        self.catalog = catalog
        self.adapter = adapter
        self.notifications = notifications

    def provision(
        self,
        candidate: Union[ProvisionCandidate, Mapping[str, Any]],
        *,
        cancel_event: Optional[Event] = None,
    ) -> Account:
        """
        Create an account on the default plan with a billing customer.

        Safe to retry with the same candidate: a retry after success fails
        with DUPLICATE_IDENTITY, and a retry racing an in-flight call is
        rejected before it reaches the provider.

        Raises:
            ValidationError: invalid candidate or duplicate email/phone
            NotFoundError: default plan missing
            ExternalProviderError: customer creation failed, nothing persisted
            OperationCancelled: cancelled before the provider call
        """
        candidate = self._coerce_candidate(candidate)
        self._ensure_unique(candidate)

        keys = identity_claim_keys(candidate)
        if not claim_keys(keys, scope=CLAIM_SCOPE, ttl_seconds=settings.PROVISION_CLAIM_TTL_SECONDS):
            provisioning_total.inc({"outcome": "duplicate"})
            raise ValidationError(
                "A provisioning request for this email or phone is already in progress",
                reason=ValidationReason.DUPLICATE_IDENTITY,
            )

        try:
            # A concurrent call may have finished between the first check and the claim
            self._ensure_unique(candidate)

            password_hash = hash_password(candidate.password)
            plan = self.catalog.get_default_plan()
            snapshot = swipe_limit_of(plan)
            account_id = str(uuid.uuid4())
            preference_id = str(uuid.uuid4())

            if cancel_event is not None and cancel_event.is_set():
                provisioning_total.inc({"outcome": "cancelled"})
                raise OperationCancelled("Provisioning cancelled before the billing customer was created")

            try:
                customer_id = self.adapter.create_customer(
                    candidate.email,
                    candidate.name,
                    idempotency_key=customer_idempotency_key(candidate.email),
                )
            except ExternalProviderError as e:
                provisioning_total.inc({"outcome": "provider_failed"})
                log_event(
                    "warning",
                    "account.provision.provider_failed",
                    error_code=e.kind.value,
                    extra={"error_message": e.message},
                )
                raise

            now = datetime.now(timezone.utc)
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(preferences).values(
                            preference_id=preference_id,
                            account_id=account_id,
                            data=dict(candidate.preferences),
                        )
                    )
                    session.execute(
                        insert(accounts).values(
                            account_id=account_id,
                            email=candidate.email,
                            phone=candidate.phone,
                            name=candidate.name,
                            password_hash=password_hash,
                            plan_id=plan.plan_id,
                            swipe_limit_snapshot=snapshot,
                            external_customer_id=customer_id,
                            preference_id=preference_id,
                            profile=dict(candidate.profile),
                            last_active_at=now,
                            created_at=now,
                        )
                    )
            except IntegrityError as e:
                provisioning_total.inc({"outcome": "duplicate"})
                log_event(
                    "error",
                    "account.provision.orphaned_customer",
                    error_code=ValidationReason.DUPLICATE_IDENTITY.value,
                    extra={"external_customer_id": customer_id},
                )
                raise ValidationError(
                    "Email or phone number already exists",
                    reason=ValidationReason.DUPLICATE_IDENTITY,
                ) from e
        finally:
            release_keys(keys)

        provisioning_total.inc({"outcome": "created"})
        log_event("info", "account.provisioned", account_id=account_id, plan_id=plan.plan_id)
        self._notify(candidate, account_id)

        return Account(
            account_id=account_id,
            email=candidate.email,
            phone=candidate.phone,
            name=candidate.name,
            plan_id=plan.plan_id,
            swipe_limit_snapshot=snapshot,
            external_customer_id=customer_id,
            preference_id=preference_id,
            last_active_at=now,
            created_at=now,
        )

    def _notify(self, candidate: ProvisionCandidate, account_id: str) -> None:
        try:
            result = self.notifications.enqueue_welcome(candidate.email, candidate.name)
        except Exception as e:
            # Provisioning already succeeded; a notification problem is only logged
            log_event(
                "error",
                "notification.welcome.enqueue_failed",
                account_id=account_id,
                error_code=type(e).__name__,
                extra={"error_message": str(e)},
            )
            return
        if not result.ok:
            log_event(
                "warning",
                "account.provision.notification_failed",
                account_id=account_id,
                extra={"error_message": result.error},
            )

    def _coerce_candidate(self, candidate: Union[ProvisionCandidate, Mapping[str, Any]]) -> ProvisionCandidate:
        if isinstance(candidate, ProvisionCandidate):
            return candidate
        try:
            return ProvisionCandidate(**dict(candidate))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid account candidate: {e.errors()[0]['msg']}") from e

    def _ensure_unique(self, candidate: ProvisionCandidate) -> None:
        with get_db_session() as session:
            existing = session.execute(
                select(accounts.c.account_id).where(
                    or_(accounts.c.email == candidate.email, accounts.c.phone == candidate.phone)
                )
            ).first()
        if existing:
            provisioning_total.inc({"outcome": "duplicate"})
            raise ValidationError(
                "Email or phone number already exists",
                reason=ValidationReason.DUPLICATE_IDENTITY,
            )
