"""Error taxonomy for the billing consistency engine.

Every error carries a stable ``code`` and an HTTP-ish ``status_code`` so the
admin endpoints that call into this package can translate them without
inspecting messages.
"""

from concurrent.futures import Future
from enum import Enum
from typing import Iterable, List, Optional


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message, "request_id": self.request_id}


class ValidationReason(str, Enum):
    INVALID_INPUT = "invalid_input"
    DUPLICATE_IDENTITY = "duplicate_identity"
    NEGATIVE_PRICE = "negative_price"
    UNKNOWN_EVENT_KIND = "unknown_event_kind"


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, *, reason: ValidationReason = ValidationReason.INVALID_INPUT, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["reason"] = self.reason.value
        return payload


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ProviderErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    REJECTED = "rejected"
    CONFIGURATION = "configuration"


_RETRYABLE_KINDS = {
    ProviderErrorKind.TIMEOUT,
    ProviderErrorKind.NETWORK,
    ProviderErrorKind.RATE_LIMITED,
    ProviderErrorKind.SERVER,
}


class ExternalProviderError(AppError):
    """A billing provider call failed (network, timeout, or provider-side rejection)."""
    code = "external_provider_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        kind: ProviderErrorKind = ProviderErrorKind.SERVER,
        operation: Optional[str] = None,
        field_group: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.kind = kind
        self.operation = operation
        self.field_group = field_group
        # Set on timeouts: the provider call that may still land
        self.in_flight: Optional[Future] = None
        if kind is ProviderErrorKind.TIMEOUT:
            self.status_code = 504

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    def for_group(self, field_group: str) -> "ExternalProviderError":
        """Copy of this error tagged with the field group that failed."""
        tagged = ExternalProviderError(
            f"{field_group} sync failed: {self.message}",
            kind=self.kind,
            operation=self.operation,
            field_group=field_group,
            request_id=self.request_id,
        )
        tagged.in_flight = self.in_flight
        tagged.__cause__ = self
        return tagged

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload.update({
            "kind": self.kind.value,
            "retryable": self.retryable,
            "operation": self.operation,
            "field_group": self.field_group,
        })
        return payload


class ConsistencyError(AppError):
    """Local plan state is marked pending-sync; the listed groups may not have reached the provider."""
    code = "pending_sync"
    status_code = 409

    def __init__(self, message: str, *, plan_id: str, pending_groups: Iterable[str], **kwargs):
        super().__init__(message, **kwargs)
        self.plan_id = plan_id
        self.pending_groups: List[str] = list(pending_groups)

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload.update({"plan_id": self.plan_id, "pending_groups": self.pending_groups})
        return payload


class ConcurrencyConflict(AppError):
    code = "concurrency_conflict"
    status_code = 409


class OperationCancelled(AppError):
    code = "cancelled"
    status_code = 499
