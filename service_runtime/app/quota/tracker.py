"""
Per-credential quota accounting.
"""

from __future__ import annotations

import asyncio
import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from shared.logging import get_logger

from service_runtime.app.adapters.registry import InMemoryRegistry
from service_runtime.app.domain.models import Credential, QuotaPeriod


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_month(value: datetime) -> datetime:
    """Same day and time next calendar month, clamped to the month's last day."""
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_reset(now: datetime, period: QuotaPeriod) -> datetime:
    """Boundary of the quota period starting at ``now``."""
    if period == QuotaPeriod.DAY:
        return now + timedelta(days=1)
    if period == QuotaPeriod.WEEK:
        return now + timedelta(weeks=1)
    return add_month(now)


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check."""

    allowed: bool
    used: Optional[int] = None
    limit: Optional[int] = None
    reset_at: Optional[datetime] = None

    def headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.limit is not None:
            headers["X-Quota-Limit"] = str(self.limit)
        if self.used is not None:
            headers["X-Quota-Used"] = str(self.used)
        if self.reset_at is not None:
            headers["X-Quota-Reset"] = self.reset_at.isoformat()
        return headers


class QuotaTracker:
    """Consumes one unit of a credential's quota per admitted request.

    The read-decide-write sequence runs under a per-credential lock so
    concurrent requests on the same key neither lose nor double-count usage.
    """

    def __init__(self, registry: InMemoryRegistry, clock: Callable[[], datetime] = utcnow):
        self.registry = registry
        self.logger = get_logger("runtime.quota")
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, credential_id: str) -> asyncio.Lock:
        lock = self._locks.get(credential_id)
        if lock is None:
            lock = self._locks.setdefault(credential_id, asyncio.Lock())
        return lock

    async def check_and_consume(self, credential: Credential) -> QuotaDecision:
        if not credential.quota.enabled:
            return QuotaDecision(allowed=True)

        async with self._lock_for(credential.id):
            current = await self.registry.get_credential_by_id(credential.id) or credential
            quota = current.quota
            if not quota.enabled:
                return QuotaDecision(allowed=True)

            now = self._clock()
            if quota.reset_at is None or now >= quota.reset_at:
                reset_at = next_reset(now, quota.period)
                await self.registry.update_quota(current.id, 1, reset_at)
                self.logger.info("Quota period reset", credential_id=current.id, reset_at=reset_at.isoformat())
                return QuotaDecision(allowed=True, used=1, limit=quota.limit, reset_at=reset_at)

            if quota.used >= quota.limit:
                self.logger.warning("Quota exceeded", credential_id=current.id, used=quota.used, limit=quota.limit)
                return QuotaDecision(allowed=False, used=quota.used, limit=quota.limit, reset_at=quota.reset_at)

            used = quota.used + 1
            await self.registry.update_quota(current.id, used, quota.reset_at)
            return QuotaDecision(allowed=True, used=used, limit=quota.limit, reset_at=quota.reset_at)
