"""
matchadmin/core/idempotency.py
Idempotency key claims backed by the idempotency_keys table.

A claim is a primary-key insert: the database decides the winner, so two
workers racing on the same key can never both believe they own it.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError

from matchadmin.core.database import get_db_session, get_session_factory, idempotency_keys


def claim_keys(keys: Iterable[str], scope: str = "generic", ttl_seconds: Optional[float] = None) -> bool:
    """
    Atomically claim every key in ``keys``.

    With ``ttl_seconds``, claims on these keys older than the ttl are taken
    over: their holder is presumed dead.

    Returns:
        True if all keys were claimed by this call
        False if any key is already held (nothing is claimed in that case)
    """
    keys = list(keys)
    now = datetime.now(timezone.utc)
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        if ttl_seconds is not None and keys:
            session.execute(
                delete(idempotency_keys)
                .where(idempotency_keys.c.key.in_(keys))
                .where(idempotency_keys.c.scope == scope)
                .where(idempotency_keys.c.created_at < now - timedelta(seconds=ttl_seconds))
            )
        for key in keys:
            session.execute(
                insert(idempotency_keys).values(key=key, scope=scope, created_at=now)
            )
        session.commit()
        return True
    except IntegrityError:
        # Duplicate key - UNIQUE constraint violation
        session.rollback()
        return False
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def release_keys(keys: Iterable[str]) -> None:
    """Release previously claimed keys (no-op for keys not held)."""
    keys = list(keys)
    if not keys:
        return
    with get_db_session() as session:
        session.execute(delete(idempotency_keys).where(idempotency_keys.c.key.in_(keys)))


def held_keys(scope: str) -> List[str]:
    """List keys currently held in a scope (diagnostics and tests)."""
    with get_db_session() as session:
        rows = session.execute(
            select(idempotency_keys.c.key).where(idempotency_keys.c.scope == scope)
        ).fetchall()
        return [row.key for row in rows]
