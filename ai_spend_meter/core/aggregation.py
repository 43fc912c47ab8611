"""
Spend aggregation over the usage store.

Computes today / this-week / this-month totals with a per-model breakdown,
plus hourly, daily and monthly spend series. Period bounds are computed in
local time at every call, so a long-running process picks up day and month
rollovers without any cached state.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ai_spend_meter.storage.repository import UsageRepository
from .token_counter import TokenCounts


class Period(Enum):
    """Aggregation windows."""
    TODAY = "today"
    THIS_WEEK = "thisWeek"    # rolling 7 days ending today
    THIS_MONTH = "thisMonth"  # calendar month


@dataclass(frozen=True)
class ModelSpend:
    """Spend for one model within a period."""
    model: str
    cost: float
    tokens: TokenCounts
    record_count: int
    unpriced_count: int = 0


@dataclass(frozen=True)
class SpendSummary:
    """Totals for one period.

    ``unpriced_count`` counts records whose model has no known price; they
    contribute tokens but no cost.
    """
    period: Period
    start: datetime
    end: datetime
    total_cost: float
    tokens: TokenCounts
    record_count: int
    unpriced_count: int
    per_model: Tuple[ModelSpend, ...]

    def __post_init__(self):
        """Validate the period bounds."""
        if self.start >= self.end:
            raise ValueError("start must be before end")

    @property
    def total_tokens(self) -> int:
        return self.tokens.total

    @property
    def has_unpriced(self) -> bool:
        return self.unpriced_count > 0


class SessionLevel(Enum):
    """How close recent usage is to the session token limit."""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SessionUsage:
    """Tokens used inside the trailing session window."""
    tokens_used: int
    token_limit: int
    window: timedelta
    level: SessionLevel

    @property
    def ratio(self) -> float:
        return self.tokens_used / self.token_limit


def evaluate_session_level(
    tokens_used: int,
    token_limit: int,
    warning_ratio: float = 0.7,
    critical_ratio: float = 0.9,
) -> SessionLevel:
    """Classify session usage against its limit.

    A ratio at or above ``critical_ratio`` is critical, at or above
    ``warning_ratio`` a warning.

    Raises:
        ValueError: If the limit is not positive or the ratios are out of order
    """
    if token_limit <= 0:
        raise ValueError("token_limit must be > 0")
    if not 0 < warning_ratio < critical_ratio <= 1:
        raise ValueError("ratios must satisfy 0 < warning < critical <= 1")
    ratio = tokens_used / token_limit
    if ratio >= critical_ratio:
        return SessionLevel.CRITICAL
    if ratio >= warning_ratio:
        return SessionLevel.WARNING
    return SessionLevel.NORMAL


def local_midnight(day: date, tz: Optional[tzinfo] = None) -> datetime:
    """Start of ``day`` in ``tz``, or in the system local zone when None."""
    naive = datetime(day.year, day.month, day.day)
    if tz is None:
        return naive.astimezone()
    return naive.replace(tzinfo=tz)


def period_bounds(
    period: Period,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> Tuple[datetime, datetime]:
    """Compute [start, end) for a period containing ``now``.

    Args:
        period: Aggregation window
        now: Timezone-aware current time
        tz: Zone defining day boundaries; system local zone when None

    Returns:
        Tuple of (inclusive start, exclusive end)
    """
    today = now.astimezone(tz).date()
    tomorrow = today + timedelta(days=1)
    if period is Period.TODAY:
        return local_midnight(today, tz), local_midnight(tomorrow, tz)
    if period is Period.THIS_WEEK:
        return local_midnight(today - timedelta(days=6), tz), local_midnight(tomorrow, tz)
    if period is Period.THIS_MONTH:
        first = today.replace(day=1)
        return local_midnight(first, tz), local_midnight(_add_months(first, 1), tz)
    raise ValueError(f"Unsupported period: {period}")


def _add_months(first_of_month: date, months: int) -> date:
    index = first_of_month.month - 1 + months
    return date(first_of_month.year + index // 12, index % 12 + 1, 1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AggregationEngine:
    """Read-side queries over the usage store.

    Every query runs as a single SQL statement, so it sees one committed
    snapshot even while ingestion is writing.
    """

    def __init__(
        self,
        repository: UsageRepository,
        clock: Callable[[], datetime] = _utcnow,
        tz: Optional[tzinfo] = None,
    ):
        self.repository = repository
        self._clock = clock
        self.tz = tz

    def summarize(self, period: Period) -> SpendSummary:
        """Total cost and tokens for a period, grouped by model.

        Args:
            period: Aggregation window

        Returns:
            SpendSummary with models ordered by descending cost
        """
        start, end = period_bounds(period, self._clock(), self.tz)
        totals = self.repository.totals_by_model(start, end)

        per_model = tuple(
            ModelSpend(
                model=t.model,
                cost=t.cost,
                tokens=t.tokens,
                record_count=t.record_count,
                unpriced_count=t.unpriced_count,
            )
            for t in sorted(totals, key=lambda t: (-t.cost, t.model))
        )
        tokens = TokenCounts()
        for spend in per_model:
            tokens = tokens + spend.tokens

        return SpendSummary(
            period=period,
            start=start,
            end=end,
            total_cost=sum(spend.cost for spend in per_model),
            tokens=tokens,
            record_count=sum(spend.record_count for spend in per_model),
            unpriced_count=sum(spend.unpriced_count for spend in per_model),
            per_model=per_model,
        )

    def summarize_all(self) -> Dict[Period, SpendSummary]:
        return {period: self.summarize(period) for period in Period}

    def hourly_spend(self, day: Optional[date] = None) -> List[float]:
        """Spend per local hour of ``day`` (today by default); 24 values."""
        day = day or self._today()
        buckets = [0.0] * 24
        start = local_midnight(day, self.tz)
        end = local_midnight(day + timedelta(days=1), self.tz)
        for timestamp, cost in self.repository.cost_points(start, end):
            buckets[timestamp.astimezone(self.tz).hour] += cost
        return buckets

    def daily_spend(self, year: int, month: int) -> List[float]:
        """Spend per local day of a month; one value per day."""
        days = calendar.monthrange(year, month)[1]
        buckets = [0.0] * days
        first = date(year, month, 1)
        start = local_midnight(first, self.tz)
        end = local_midnight(_add_months(first, 1), self.tz)
        for timestamp, cost in self.repository.cost_points(start, end):
            buckets[timestamp.astimezone(self.tz).day - 1] += cost
        return buckets

    def monthly_spend(self, year: int) -> List[float]:
        """Spend per local calendar month of a year; 12 values."""
        buckets = [0.0] * 12
        start = local_midnight(date(year, 1, 1), self.tz)
        end = local_midnight(date(year + 1, 1, 1), self.tz)
        for timestamp, cost in self.repository.cost_points(start, end):
            buckets[timestamp.astimezone(self.tz).month - 1] += cost
        return buckets

    def tokens_used_in_last(self, hours: float, now: Optional[datetime] = None) -> int:
        """Tokens of every category recorded in the trailing ``hours``.

        The window is (now - hours, now], so a record stamped exactly at
        ``now`` is counted.
        """
        if hours <= 0:
            raise ValueError("hours must be > 0")
        now = now or self._clock()
        end = now + timedelta(microseconds=1)
        return self.repository.tokens_between(end - timedelta(hours=hours), end)

    def session_usage(
        self,
        token_limit: int,
        window_hours: float = 5.0,
        warning_ratio: float = 0.7,
        critical_ratio: float = 0.9,
        now: Optional[datetime] = None,
    ) -> SessionUsage:
        """Usage of the current session window and its alert level.

        Args:
            token_limit: Tokens allowed per window
            window_hours: Length of the trailing window
            warning_ratio: Fraction of the limit that starts a warning
            critical_ratio: Fraction of the limit that is critical
            now: Evaluation time, the engine clock by default

        Returns:
            SessionUsage for the window ending at ``now``
        """
        used = self.tokens_used_in_last(window_hours, now)
        return SessionUsage(
            tokens_used=used,
            token_limit=token_limit,
            window=timedelta(hours=window_hours),
            level=evaluate_session_level(used, token_limit, warning_ratio, critical_ratio),
        )

    def earliest_data_date(self) -> Optional[date]:
        """Local date of the oldest stored record, or None when empty."""
        earliest = self.repository.earliest_timestamp()
        if earliest is None:
            return None
        return earliest.astimezone(self.tz).date()

    def _today(self) -> date:
        return self._clock().astimezone(self.tz).date()
