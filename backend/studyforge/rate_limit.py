# Per-identity generation quota backed by one counter row per identity.
# Counters roll over lazily against UTC day and month markers on every read or write.
# The read-then-write update is not one transaction, so concurrent requests from
# one identity can overshoot the limit slightly.
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from studyforge.errors import QuotaExceeded
from studyforge.models import RateLimitRecord
from studyforge.security import hash_ip

logger = logging.getLogger("studyforge.rate_limit")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ip_identity(ip_address: str) -> str:
    return f"ip_{hash_ip(ip_address)}"


def user_identity(user_id: str) -> str:
    return f"user_{user_id}"


# (day, month) markers for now in UTC.
def current_period(now: datetime) -> Tuple[str, str]:
    now = now.astimezone(timezone.utc) if now.tzinfo else now
    return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")


@dataclass(frozen=True)
class QuotaCounters:
    daily_count: int
    last_daily_reset: str
    monthly_count: int = 0
    last_monthly_reset: Optional[str] = None


# Zero any counter whose period marker is stale. month is None when monthly
# limiting is off, and the monthly fields are then left alone.
def rollover(counters: QuotaCounters, today: str, month: Optional[str] = None) -> QuotaCounters:
    rolled = counters
    if rolled.last_daily_reset != today:
        rolled = replace(rolled, daily_count=0, last_daily_reset=today)
    if month is not None and rolled.last_monthly_reset != month:
        rolled = replace(rolled, monthly_count=0, last_monthly_reset=month)
    return rolled


@dataclass
class RateLimitStatus:
    daily: int
    daily_limit: int
    monthly: Optional[int] = None
    monthly_limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"daily": self.daily, "dailyLimit": self.daily_limit}
        if self.monthly_limit is not None:
            payload["monthly"] = self.monthly
            payload["monthlyLimit"] = self.monthly_limit
        return payload


@dataclass
class RateLimitResult:
    allowed: bool
    reason: Optional[str] = None
    remaining: Optional[RateLimitStatus] = None


# Daily and optional monthly generation quota keyed by identity.
class RateLimiter:
    def __init__(
        self,
        db: Session,
        daily_limit: int,
        monthly_limit: int = 0,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.daily_limit = daily_limit
        self.monthly_limit = monthly_limit
        self.clock = clock or utc_now

    @property
    def monthly_enabled(self) -> bool:
        return self.monthly_limit > 0

    def _periods(self) -> Tuple[str, Optional[str]]:
        today, month = current_period(self.clock())
        return today, (month if self.monthly_enabled else None)

    @staticmethod
    def _counters(record: RateLimitRecord) -> QuotaCounters:
        return QuotaCounters(
            daily_count=record.daily_count or 0,
            last_daily_reset=record.last_daily_reset,
            monthly_count=record.monthly_count or 0,
            last_monthly_reset=record.last_monthly_reset,
        )

    def _store(self, record: RateLimitRecord, counters: QuotaCounters) -> None:
        record.daily_count = counters.daily_count
        record.last_daily_reset = counters.last_daily_reset
        if self.monthly_enabled:
            record.monthly_count = counters.monthly_count
            record.last_monthly_reset = counters.last_monthly_reset
        self.db.add(record)
        self.db.commit()

    def _remaining(self, counters: QuotaCounters) -> RateLimitStatus:
        status = RateLimitStatus(
            daily=max(0, self.daily_limit - counters.daily_count),
            daily_limit=self.daily_limit,
        )
        if self.monthly_enabled:
            status.monthly = max(0, self.monthly_limit - counters.monthly_count)
            status.monthly_limit = self.monthly_limit
        return status

    @staticmethod
    def _scope(identity: str) -> str:
        return "per IP address" if identity.startswith("ip_") else "per user"

    def check_and_consume(self, identity: str) -> RateLimitResult:
        today, month = self._periods()
        record = self.db.get(RateLimitRecord, identity)

        if record is None:
            counters = QuotaCounters(
                daily_count=1,
                last_daily_reset=today,
                monthly_count=1 if month else 0,
                last_monthly_reset=month,
            )
            self._store(RateLimitRecord(key=identity), counters)
            logger.info("rate limit record created for %s", identity)
            return RateLimitResult(allowed=True, remaining=self._remaining(counters))

        stored = self._counters(record)
        counters = rollover(stored, today, month)

        if counters.daily_count >= self.daily_limit:
            if counters != stored:
                self._store(record, counters)
            logger.warning("daily quota exhausted for %s", identity)
            return RateLimitResult(
                allowed=False,
                reason=(
                    f"Daily limit of {self.daily_limit} quiz generations "
                    f"{self._scope(identity)} exceeded. Resets at midnight UTC."
                ),
            )

        if month is not None and counters.monthly_count >= self.monthly_limit:
            if counters != stored:
                self._store(record, counters)
            logger.warning("monthly quota exhausted for %s", identity)
            return RateLimitResult(
                allowed=False,
                reason=(
                    f"Monthly limit of {self.monthly_limit} quiz generations "
                    f"{self._scope(identity)} exceeded. Resets on the 1st of next month (UTC)."
                ),
            )

        counters = replace(
            counters,
            daily_count=counters.daily_count + 1,
            monthly_count=counters.monthly_count + 1 if month else counters.monthly_count,
        )
        self._store(record, counters)
        return RateLimitResult(allowed=True, remaining=self._remaining(counters))

    def get_status(self, identity: str) -> RateLimitStatus:
        today, month = self._periods()
        record = self.db.get(RateLimitRecord, identity)
        if record is None:
            return self._remaining(QuotaCounters(daily_count=0, last_daily_reset=today))
        return self._remaining(rollover(self._counters(record), today, month))

    def consume_or_raise(self, identity: str) -> RateLimitStatus:
        result = self.check_and_consume(identity)
        if not result.allowed:
            raise QuotaExceeded(result.reason)
        return result.remaining
