"""Per-conversation mutual exclusion.

At most one processing pass may run for a ``(phone_number, device_id)`` key at
a time. The database backend stores one row per held key in ``session_locks``;
an abandoned row (the holder crashed before releasing) is reclaimed once it is
older than the staleness threshold.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterator, Optional

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from nodepath.config import settings
from nodepath.logging_config import get_logger
from nodepath.models import SessionLock

logger = get_logger("session_lock")

LOCK_NOT_AVAILABLE_PGCODE = "55P03"


class LockOutcome(str, Enum):
    ACQUIRED = "acquired"
    REJECTED = "rejected"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StalenessPolicy:
    stale_after_seconds: float = 30.0

    def is_stale(self, locked_at: Optional[datetime], now: datetime) -> bool:
        if locked_at is None:
            return True
        if locked_at.tzinfo is None:
            locked_at = locked_at.replace(tzinfo=timezone.utc)
        return (now - locked_at).total_seconds() > self.stale_after_seconds


class DistributedLock(ABC):
    """Mutual exclusion keyed by conversation.

    A successful acquisition returns a token (the ``locked_at`` written for
    this holder). Releasing with that token only drops the lock while the
    holder still owns it, so a pass that outlived the staleness window cannot
    delete the lock of the pass that reclaimed it.
    """

    @abstractmethod
    def acquire(self, phone_number: str, device_id: str) -> Optional[datetime]:
        """Return the ownership token, or None when rejected. Never blocks longer than the lock-wait bound."""

    @abstractmethod
    def release(self, phone_number: str, device_id: str, token: Optional[datetime] = None) -> bool:
        """Drop the lock if ``token`` still owns it; without a token the key is dropped unconditionally.

        Returns False when nothing was released.
        """

    def try_acquire(self, phone_number: str, device_id: str) -> LockOutcome:
        if self.acquire(phone_number, device_id) is None:
            return LockOutcome.REJECTED
        return LockOutcome.ACQUIRED

    @contextmanager
    def hold(self, phone_number: str, device_id: str) -> Iterator[LockOutcome]:
        """Acquire for the duration of a block; release is guaranteed once acquired."""
        token = self.acquire(phone_number, device_id)
        if token is None:
            yield LockOutcome.REJECTED
            return
        try:
            yield LockOutcome.ACQUIRED
        finally:
            context = {"phone": phone_number, "device_id": device_id}
            try:
                if not self.release(phone_number, device_id, token=token):
                    logger.warning("Session lock was reclaimed before release", extra={"context": context})
            except Exception as exc:
                logger.error("Failed to release session lock", extra={"context": {**context, "error": str(exc)}})


def is_lock_wait_timeout(exc: OperationalError) -> bool:
    if getattr(exc.orig, "pgcode", None) == LOCK_NOT_AVAILABLE_PGCODE:
        return True
    message = str(exc).lower()
    return "lock timeout" in message or "lock wait timeout" in message


class RowSessionLock(DistributedLock):
    """Lock backed by a row in ``session_locks``, acquired under ``SELECT ... FOR UPDATE``."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        policy: Optional[StalenessPolicy] = None,
        lock_wait_seconds: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.policy = policy or StalenessPolicy()
        self.lock_wait_seconds = lock_wait_seconds
        self.clock = clock

    def acquire(self, phone_number: str, device_id: str) -> Optional[datetime]:
        params = {"phone": phone_number, "device_id": device_id}
        db = self.session_factory()
        try:
            wait_ms = max(int(self.lock_wait_seconds * 1000), 1)
            db.execute(text(f"SET LOCAL lock_timeout = '{wait_ms}ms'"))
            row = (
                db.execute(
                    text(
                        """
                        SELECT locked_at
                        FROM session_locks
                        WHERE phone_number = :phone AND device_id = :device_id
                        FOR UPDATE
                        """
                    ),
                    params,
                )
                .mappings()
                .first()
            )
            now = self.clock()

            if row is None:
                stmt = (
                    insert(SessionLock)
                    .values(phone_number=phone_number, device_id=device_id, locked_at=now)
                    .on_conflict_do_nothing(index_elements=["phone_number", "device_id"])
                )
                result = db.execute(stmt)
                if result.rowcount == 0:
                    # another holder inserted between our SELECT and INSERT
                    db.rollback()
                    return None
                db.commit()
                return now

            if not self.policy.is_stale(row["locked_at"], now):
                db.rollback()
                return None

            db.execute(
                text(
                    """
                    UPDATE session_locks
                    SET locked_at = :now
                    WHERE phone_number = :phone AND device_id = :device_id
                    """
                ),
                {**params, "now": now},
            )
            db.commit()
            logger.warning(
                "Reclaimed stale session lock",
                extra={"context": {**params, "locked_at": str(row["locked_at"])}},
            )
            return now
        except OperationalError as exc:
            db.rollback()
            if is_lock_wait_timeout(exc):
                logger.debug("Session lock wait timed out", extra={"context": params})
                return None
            raise
        finally:
            db.close()

    def release(self, phone_number: str, device_id: str, token: Optional[datetime] = None) -> bool:
        sql = "DELETE FROM session_locks WHERE phone_number = :phone AND device_id = :device_id"
        params = {"phone": phone_number, "device_id": device_id}
        if token is not None:
            sql += " AND locked_at = :token"
            params["token"] = token
        db = self.session_factory()
        try:
            result = db.execute(text(sql), params)
            db.commit()
            return token is None or result.rowcount > 0
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class InMemorySessionLock(DistributedLock):
    """Process-local lock with the same staleness semantics. Single-process deployments only."""

    def __init__(
        self,
        policy: Optional[StalenessPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.policy = policy or StalenessPolicy()
        self.clock = clock
        self._mutex = threading.Lock()
        self._held: dict[tuple[str, str], datetime] = {}

    def acquire(self, phone_number: str, device_id: str) -> Optional[datetime]:
        key = (phone_number, device_id)
        with self._mutex:
            now = self.clock()
            locked_at = self._held.get(key)
            if locked_at is not None:
                if not self.policy.is_stale(locked_at, now):
                    return None
                logger.warning(
                    "Reclaimed stale session lock",
                    extra={"context": {"phone": phone_number, "device_id": device_id}},
                )
            self._held[key] = now
            return now

    def release(self, phone_number: str, device_id: str, token: Optional[datetime] = None) -> bool:
        key = (phone_number, device_id)
        with self._mutex:
            if key not in self._held:
                return token is None
            if token is not None and self._held[key] != token:
                return False
            del self._held[key]
            return True

    def is_held(self, phone_number: str, device_id: str) -> bool:
        with self._mutex:
            return (phone_number, device_id) in self._held


def build_session_lock(session_factory: Callable[[], Session]) -> DistributedLock:
    policy = StalenessPolicy(stale_after_seconds=settings.session_lock_stale_seconds)
    if settings.session_lock_backend == "memory":
        return InMemorySessionLock(policy=policy)
    return RowSessionLock(
        session_factory,
        policy=policy,
        lock_wait_seconds=settings.session_lock_wait_seconds,
    )
