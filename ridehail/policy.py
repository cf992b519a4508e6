from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import CancellationPolicy


logger = logging.getLogger("ridehail.policy")


@dataclass(frozen=True)
class Policy:
    free_cancel_window_minutes: int = 2
    max_free_cancels_per_day: int = 3
    max_free_cancels_per_week: int = 10
    driver_no_show_minutes: int = 5
    rider_no_show_minutes: int = 5
    driver_penalty_threshold: int = 20
    rider_penalty_threshold: int = 30
    name: str = "Built-in default"
    is_default: bool = True
    is_active: bool = True

    @classmethod
    def from_row(cls, row: CancellationPolicy) -> "Policy":
        return cls(
            free_cancel_window_minutes=row.free_cancel_window_minutes,
            max_free_cancels_per_day=row.max_free_cancels_per_day,
            max_free_cancels_per_week=row.max_free_cancels_per_week,
            driver_no_show_minutes=row.driver_no_show_minutes,
            rider_no_show_minutes=row.rider_no_show_minutes,
            driver_penalty_threshold=row.driver_penalty_threshold,
            rider_penalty_threshold=row.rider_penalty_threshold,
            name=row.name,
            is_default=row.is_default,
            is_active=row.is_active,
        )


# Used whenever no default+active policy row exists. Never mutated.
DEFAULT_POLICY = Policy()


class PolicySource(Protocol):
    def active_policy(self) -> Policy: ...


class SqlPolicySource:
    def __init__(self, db: Session):
        self.db = db

    def active_policy(self) -> Policy:
        row = self.db.execute(
            select(CancellationPolicy)
            .where(CancellationPolicy.is_default.is_(True), CancellationPolicy.is_active.is_(True))
            .order_by(CancellationPolicy.created_at)
            .limit(1)
        ).scalar_one_or_none()
        if row is None:
            return DEFAULT_POLICY
        return Policy.from_row(row)


class CachedPolicySource:
    """Keeps the last loaded policy for ``ttl_secs``; refresh swaps the reference."""

    def __init__(self, ttl_secs: float):
        self.ttl_secs = ttl_secs
        self._lock = threading.Lock()
        self._cached: Optional[tuple[Policy, float]] = None

    def get(self, source: PolicySource) -> Policy:
        if self.ttl_secs <= 0:
            return source.active_policy()
        cached = self._cached
        now = time.monotonic()
        if cached is not None and now - cached[1] < self.ttl_secs:
            return cached[0]
        policy = source.active_policy()
        with self._lock:
            self._cached = (policy, now)
        logger.debug("cancellation policy refreshed: %s", policy.name)
        return policy

    def clear(self) -> None:
        with self._lock:
            self._cached = None

    def bind(self, source: PolicySource) -> "BoundPolicySource":
        return BoundPolicySource(self, source)


class BoundPolicySource:
    """A request-scoped source that reads through a process-wide cache."""

    def __init__(self, cache: CachedPolicySource, source: PolicySource):
        self.cache = cache
        self.source = source

    def active_policy(self) -> Policy:
        return self.cache.get(self.source)
