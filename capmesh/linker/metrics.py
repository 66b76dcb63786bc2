from __future__ import annotations

"""Resolution metrics and provider load tracking.

``ResolutionMetrics`` accumulates counters for every resolution and compares
them against the configured ``PerformanceTargets`` (max resolution time,
min cache hit rate, max failure rate). Breached targets are reported as
concerns and logged.

``LoadTracker`` holds the in-flight usage count per provider; the evaluator
turns it into the load sub-score.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from capmesh.core.config import PerformanceTargets
from capmesh.core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MetricsSnapshot:
    resolutions: int
    cache_hits: int
    failures: int
    avg_resolution_time_ms: float
    cache_hit_rate: float
    failure_rate: float
    failures_by_kind: Dict[str, int] = field(default_factory=dict)


class ResolutionMetrics:
    """Process-wide resolution counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resolutions = 0
        self._cache_hits = 0
        self._failures = 0
        self._total_time_ms = 0.0
        self._failures_by_kind: Dict[str, int] = {}

    def record_success(self, *, elapsed_ms: float, cached: bool) -> None:
        with self._lock:
            self._resolutions += 1
            self._total_time_ms += elapsed_ms
            if cached:
                self._cache_hits += 1

    def record_failure(self, *, elapsed_ms: float, kind: str) -> None:
        with self._lock:
            self._resolutions += 1
            self._failures += 1
            self._total_time_ms += elapsed_ms
            self._failures_by_kind[kind] = self._failures_by_kind.get(kind, 0) + 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            n = self._resolutions
            return MetricsSnapshot(
                resolutions=n,
                cache_hits=self._cache_hits,
                failures=self._failures,
                avg_resolution_time_ms=self._total_time_ms / n if n else 0.0,
                cache_hit_rate=self._cache_hits / n if n else 0.0,
                failure_rate=self._failures / n if n else 0.0,
                failures_by_kind=dict(self._failures_by_kind),
            )

    def check_targets(self, targets: PerformanceTargets) -> List[str]:
        """
        Compare current counters with the performance targets.

        Targets are only evaluated once ``targets.min_samples`` resolutions
        have been recorded.

        Args:
            targets: The configured performance targets.

        Returns:
            A list of human-readable concerns; empty when all targets are met.
        """
        snap = self.snapshot()
        if snap.resolutions < targets.min_samples:
            return []
        concerns: List[str] = []
        if snap.failure_rate > targets.max_failure_rate:
            concerns.append(
                f"failure rate {snap.failure_rate:.3f} exceeds target {targets.max_failure_rate:.3f}"
            )
        if snap.avg_resolution_time_ms > targets.max_resolution_time_ms:
            concerns.append(
                f"average resolution time {snap.avg_resolution_time_ms:.1f}ms exceeds "
                f"target {targets.max_resolution_time_ms:.1f}ms"
            )
        if snap.cache_hit_rate < targets.min_cache_hit_rate:
            concerns.append(
                f"cache hit rate {snap.cache_hit_rate:.3f} below target {targets.min_cache_hit_rate:.3f}"
            )
        for concern in concerns:
            logger.warning("Linker performance concern: %s", concern)
        return concerns

    def reset(self) -> None:
        with self._lock:
            self._resolutions = 0
            self._cache_hits = 0
            self._failures = 0
            self._total_time_ms = 0.0
            self._failures_by_kind.clear()


class LoadTracker:
    """In-flight usage counts per provider id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: Dict[str, int] = {}

    def acquire(self, provider_id: str) -> int:
        with self._lock:
            count = self._in_flight.get(provider_id, 0) + 1
            self._in_flight[provider_id] = count
            return count

    def release(self, provider_id: str) -> int:
        with self._lock:
            count = max(0, self._in_flight.get(provider_id, 0) - 1)
            if count:
                self._in_flight[provider_id] = count
            else:
                self._in_flight.pop(provider_id, None)
            return count

    def in_flight(self, provider_id: str) -> int:
        with self._lock:
            return self._in_flight.get(provider_id, 0)

    def snapshot(self) -> Mapping[str, int]:
        with self._lock:
            return dict(self._in_flight)
