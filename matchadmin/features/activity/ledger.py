"""
matchadmin/features/activity/ledger.py

Per-account, per-month activity counters.

Each increment is one INSERT ... ON CONFLICT DO UPDATE statement against the
(account_id, year, month) key, so concurrent increments never lose an update
and never observe a missing record.
"""

from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy.dialects import mysql, postgresql, sqlite

from matchadmin.core.database import activity_records, dialect_name, get_db_session
from matchadmin.core.errors import ValidationError, ValidationReason
from matchadmin.core.logging import log_event
from matchadmin.core.metrics import activity_increments_total
from matchadmin.models.activity import EventKind


def parse_event_kind(kind: Union[EventKind, str]) -> EventKind:
    if isinstance(kind, EventKind):
        return kind
    try:
        return EventKind(str(kind).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown event kind: {kind!r}",
            reason=ValidationReason.UNKNOWN_EVENT_KIND,
        ) from None


def bucket_of(timestamp: Optional[datetime]) -> tuple:
    """(year, month) on the UTC calendar; naive timestamps are taken as UTC."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    elif timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    else:
        timestamp = timestamp.astimezone(timezone.utc)
    return timestamp.year, timestamp.month


def _upsert_statement(dialect: str, account_id: str, year: int, month: int, counter: str):
    column = activity_records.c[counter]
    values = {"account_id": account_id, "year": year, "month": month, counter: 1}

    if dialect == "postgresql":
        stmt = postgresql.insert(activity_records).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=["account_id", "year", "month"],
            set_={counter: column + 1},
        )
    if dialect == "sqlite":
        stmt = sqlite.insert(activity_records).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=["account_id", "year", "month"],
            set_={counter: column + 1},
        )
    if dialect in ("mysql", "mariadb"):
        stmt = mysql.insert(activity_records).values(**values)
        return stmt.on_duplicate_key_update({counter: column + 1})
    raise RuntimeError(f"Activity ledger has no atomic upsert for dialect '{dialect}'")


class ActivityLedger:
    def increment(
        self,
        account_id: str,
        event_kind: Union[EventKind, str],
        timestamp: Optional[datetime] = None,
    ) -> None:
        """
        Add one to the counter for ``event_kind`` in the month of ``timestamp``.

        Raises:
            ValidationError: unknown event kind or empty account id (nothing written)
        """
        kind = parse_event_kind(event_kind)
        if not account_id:
            raise ValidationError("account_id is required")
        year, month = bucket_of(timestamp)

        stmt = _upsert_statement(dialect_name(), account_id, year, month, kind.counter)
        with get_db_session() as session:
            session.execute(stmt)

        activity_increments_total.inc({"kind": kind.value})
        log_event(
            "debug",
            "activity.incremented",
            account_id=account_id,
            record_key=f"{account_id}:{year}-{month:02d}",
            event_type=kind.value,
        )
