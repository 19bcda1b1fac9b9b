"""
Notification queue.

Provisioning hands the welcome notification to a NotificationQueue and never
waits for delivery. Enqueue and delivery failures surface through the
returned NotificationResult and the logs, never as exceptions.

- RQNotificationQueue: Redis-backed rq queue (production)
- InlineNotificationQueue: runs the job in-process (development, tests)
"""
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError
from rq import Callback, Queue

from matchadmin.core.config import settings
from matchadmin.core.logging import log_event
from matchadmin.core.metrics import notifications_total
from matchadmin.workers.notifications import report_failure, send_welcome_email


@dataclass
class NotificationResult:
    status: str  # queued | sent | failed
    job_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class NotificationQueue(Protocol):
    def enqueue_welcome(self, email: str, name: Optional[str] = None) -> NotificationResult:
        ...

    def close(self) -> None:
        ...


class RQNotificationQueue:
    def __init__(self, redis_url: Optional[str] = None, queue_name: Optional[str] = None, connection: Optional[Redis] = None):
        self._owns_connection = connection is None
        self._connection = connection or Redis.from_url(redis_url or settings.REDIS_URL)
        self._queue = Queue(queue_name or settings.NOTIFICATIONS_QUEUE, connection=self._connection)

    def enqueue_welcome(self, email: str, name: Optional[str] = None) -> NotificationResult:
        try:
            job = self._queue.enqueue(
                send_welcome_email,
                email,
                name,
                job_timeout=settings.NOTIFICATIONS_JOB_TIMEOUT,
                result_ttl=3600,  # Keep result for 1 hour
                failure_ttl=86400,
                on_failure=Callback(report_failure),
            )
        except RedisError as e:
            notifications_total.inc({"outcome": "enqueue_failed"})
            log_event(
                "error",
                "notification.welcome.enqueue_failed",
                event_type="welcome",
                error_code=type(e).__name__,
                extra={"error_message": str(e)},
            )
            return NotificationResult(status="failed", error=str(e))

        notifications_total.inc({"outcome": "queued"})
        return NotificationResult(status="queued", job_id=job.id)

    def close(self) -> None:
        """Close the Redis connection if this queue opened it."""
        if self._owns_connection:
            self._connection.close()


class InlineNotificationQueue:
    """Runs notification jobs synchronously and keeps every result."""

    def __init__(self, sender: Optional[Callable] = None):
        self.sender = sender
        self.results: List[NotificationResult] = []

    def enqueue_welcome(self, email: str, name: Optional[str] = None) -> NotificationResult:
        try:
            send_welcome_email(email, name, sender=self.sender)
            result = NotificationResult(status="sent")
        except Exception as e:
            # Delivery failures belong to the job result, never to the caller
            notifications_total.inc({"outcome": "failed"})
            log_event(
                "error",
                "notification.welcome.failed",
                event_type="welcome",
                error_code=type(e).__name__,
                extra={"error_message": str(e)},
            )
            result = NotificationResult(status="failed", error=str(e))
        self.results.append(result)
        return result

    def close(self) -> None:
        pass
