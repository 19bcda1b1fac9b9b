"""Welcome notification worker.

Jobs are enqueued by matchadmin.features.notifications.queue and executed by
an rq worker:

    python -m matchadmin.workers.notifications --burst

Job arguments are persisted in Redis, so jobs carry the recipient's name and
email only.
"""
from __future__ import annotations

import argparse
import smtplib
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional

from redis import Redis
from rq import Queue, Worker

from matchadmin.core.config import settings
from matchadmin.core.logging import configure_logging, log_event
from matchadmin.core.metrics import notifications_total


def build_welcome_message(email: str, name: Optional[str] = None) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = settings.WELCOME_SUBJECT
    message["From"] = settings.MAIL_FROM or settings.SMTP_USER or "no-reply@localhost"
    message["To"] = email
    greeting = f"Hi {name}," if name else "Hi,"
    message.set_content(
        f"{greeting}\n\n"
        "Your account is ready. You are on the free plan and can upgrade at any time.\n"
    )
    return message


def smtp_send(message: EmailMessage) -> None:
    if not settings.SMTP_HOST:
        raise RuntimeError("SMTP_HOST not configured")
    with smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
        if settings.SMTP_USER:
            smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD or "")
        smtp.send_message(message)


def send_welcome_email(
    email: str,
    name: Optional[str] = None,
    *,
    sender: Optional[Callable[[EmailMessage], None]] = None,
) -> Dict[str, Any]:
    """rq job: deliver the welcome email. Raises on delivery failure so rq records it."""
    message = build_welcome_message(email, name)
    (sender or smtp_send)(message)
    notifications_total.inc({"outcome": "sent"})
    log_event("info", "notification.welcome.sent", event_type="welcome")
    return {"email": email, "status": "sent"}


def report_failure(job, connection, exc_type, exc_value, traceback) -> None:
    """rq on_failure callback: the job result channel for delivery failures."""
    notifications_total.inc({"outcome": "failed"})
    log_event(
        "error",
        "notification.welcome.failed",
        event_type="welcome",
        error_code=getattr(exc_type, "__name__", "error"),
        extra={"job_id": job.id, "error_message": str(exc_value)},
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Notification worker")
    parser.add_argument("--queue", default=settings.NOTIFICATIONS_QUEUE, help="Queue to consume")
    parser.add_argument("--burst", action="store_true", help="Drain the queue and exit")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    connection = Redis.from_url(settings.REDIS_URL)
    worker = Worker([Queue(args.queue, connection=connection)], connection=connection)
    worker.work(burst=args.burst)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
