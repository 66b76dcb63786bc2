"""Rolling-window aggregation of provider performance samples.

Shared by the in-memory and SQL stores so both report identical statistics.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from ..schemas.domain import ProviderStats


@dataclass(frozen=True)
class Sample:
    recorded_at: datetime
    response_time_ms: float
    success: bool


def as_utc(value: datetime) -> datetime:
    """Normalise to aware UTC; naive values (SQLite reads) are taken as UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def aggregate(samples: Iterable[Sample], *, since: datetime, now: Optional[datetime] = None) -> ProviderStats:
    """
    Aggregate samples recorded at or after ``since``.

    - ``uptime`` is the share of hourly buckets with at least one success.
    - ``consecutive_failures`` counts the trailing failures in time order.
    - ``throughput_per_minute`` divides the sample count by the observed span
      (first sample to ``now``, at least one minute).
    """
    since = as_utc(since)
    now = as_utc(now or datetime.now(timezone.utc))
    window: List[Sample] = sorted(
        (s for s in samples if as_utc(s.recorded_at) >= since), key=lambda s: as_utc(s.recorded_at)
    )
    if not window:
        return ProviderStats()

    n = len(window)
    successes = sum(1 for s in window if s.success)
    buckets: Dict[datetime, bool] = {}
    for s in window:
        hour = as_utc(s.recorded_at).replace(minute=0, second=0, microsecond=0)
        buckets[hour] = buckets.get(hour, False) or s.success

    trailing_failures = 0
    for s in reversed(window):
        if s.success:
            break
        trailing_failures += 1

    span = max(now - as_utc(window[0].recorded_at), timedelta(minutes=1))
    return ProviderStats(
        sample_count=n,
        avg_response_time_ms=sum(s.response_time_ms for s in window) / n,
        success_rate=successes / n,
        throughput_per_minute=n / (span.total_seconds() / 60.0),
        uptime=sum(1 for up in buckets.values() if up) / len(buckets),
        consecutive_failures=trailing_failures,
    )
