"""
Free daily usage quota with reserve/commit/rollback accounting.

A run reserves a slot before it starts, commits the slot on its first
successful stage, and rolls the reservation back if nothing succeeded.
Counters reset lazily on the first call of a new calendar day.

All counter mutations go through one lock, so concurrent runs (or relay
worker threads) never interleave a read-modify-write.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from purrplexed.config import Settings, settings as default_settings
from purrplexed.models import UsageCounter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageCounters:
    consumed: int
    reserved: int
    last_reset_at: datetime


class UsageStore(Protocol):
    def load(self) -> Optional[UsageCounters]: ...

    def save(self, counters: UsageCounters) -> None: ...


class InMemoryUsageStore:
    """Keeps counters for the lifetime of the process."""

    def __init__(self, counters: Optional[UsageCounters] = None):
        self._counters = counters

    def load(self) -> Optional[UsageCounters]:
        return self._counters

    def save(self, counters: UsageCounters) -> None:
        self._counters = counters


class SQLAlchemyUsageStore:
    """Persists counters in the ``usage_counters`` table, one row per meter key."""

    def __init__(self, session_factory: sessionmaker, meter_key: str = "default"):
        self.session_factory = session_factory
        self.meter_key = meter_key

    def _row(self, db: Session) -> Optional[UsageCounter]:
        return (
            db.query(UsageCounter)
            .filter(UsageCounter.meter_key == self.meter_key)
            .first()
        )

    def load(self) -> Optional[UsageCounters]:
        db = self.session_factory()
        try:
            row = self._row(db)
            if row is None:
                return None
            return UsageCounters(
                consumed=row.consumed,
                reserved=row.reserved,
                last_reset_at=row.last_reset_at,
            )
        finally:
            db.close()

    def save(self, counters: UsageCounters) -> None:
        db = self.session_factory()
        try:
            row = self._row(db)
            if row is None:
                row = UsageCounter(meter_key=self.meter_key)
                db.add(row)
            row.consumed = counters.consumed
            row.reserved = counters.reserved
            row.last_reset_at = counters.last_reset_at
            db.commit()
        finally:
            db.close()


class UsageMeter(Protocol):
    daily_limit: Optional[int]

    def can_start_job(self) -> bool: ...

    def remaining_free_count(self) -> Optional[int]: ...

    def reserve(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class UsageMeterService:
    """Daily quota meter backed by a UsageStore."""

    def __init__(
        self,
        daily_limit: int,
        store: Optional[UsageStore] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.daily_limit = max(0, daily_limit)
        self.store = store or InMemoryUsageStore()
        self.clock = clock
        self._lock = threading.Lock()

    def _load(self) -> UsageCounters:
        counters = self.store.load()
        if counters is None:
            counters = UsageCounters(consumed=0, reserved=0, last_reset_at=self.clock())
            self.store.save(counters)
        return counters

    def _reset_if_needed(self, now: datetime) -> UsageCounters:
        counters = self._load()
        if now.date() != counters.last_reset_at.date():
            logger.info(
                "Resetting usage counters (last reset %s)",
                counters.last_reset_at.date().isoformat(),
            )
            counters = UsageCounters(consumed=0, reserved=0, last_reset_at=now)
            self.store.save(counters)
        return counters

    def reset_if_needed(self, now: Optional[datetime] = None) -> None:
        """Zero both counters when ``now`` falls on a later calendar day."""
        with self._lock:
            self._reset_if_needed(now or self.clock())

    def counters(self) -> UsageCounters:
        with self._lock:
            return self._reset_if_needed(self.clock())

    def can_start_job(self) -> bool:
        with self._lock:
            counters = self._reset_if_needed(self.clock())
            return (counters.consumed + counters.reserved) < self.daily_limit

    def remaining_free_count(self) -> int:
        with self._lock:
            counters = self._reset_if_needed(self.clock())
            return max(0, self.daily_limit - (counters.consumed + counters.reserved))

    def reserve(self) -> None:
        with self._lock:
            counters = self._reset_if_needed(self.clock())
            self.store.save(
                replace(counters, reserved=min(self.daily_limit, counters.reserved + 1))
            )

    def commit(self) -> None:
        with self._lock:
            counters = self._reset_if_needed(self.clock())
            self.store.save(
                replace(
                    counters,
                    reserved=max(0, counters.reserved - 1),
                    consumed=min(self.daily_limit, counters.consumed + 1),
                )
            )

    def rollback(self) -> None:
        with self._lock:
            counters = self._reset_if_needed(self.clock())
            self.store.save(replace(counters, reserved=max(0, counters.reserved - 1)))


class UnlimitedUsageMeter:
    """Premium override: every job may start and nothing is charged."""

    daily_limit = None

    def can_start_job(self) -> bool:
        return True

    def remaining_free_count(self) -> None:
        return None

    def reserve(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass


def build_usage_meter(
    config: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
) -> UsageMeter:
    """Meter for the configured plan, persisted through SQLAlchemy."""
    config = config or default_settings
    if config.premium_override:
        logger.info("Premium override active, usage quota disabled")
        return UnlimitedUsageMeter()

    if session_factory is None:
        from purrplexed.database import SessionLocal, init_db

        init_db()
        session_factory = SessionLocal

    store = SQLAlchemyUsageStore(session_factory, meter_key=config.usage_meter_key)
    return UsageMeterService(config.free_daily_limit, store=store)
