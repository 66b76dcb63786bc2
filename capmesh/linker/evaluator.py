"""Provider evaluator.

Scores candidate providers for a request with a weighted composite of four
independent sub-scores, each clamped to [0, 1]:

- performance (7-day response time, success rate, throughput),
- compatibility (interface-spec overlap and consumer allow-list),
- stability (stability rating, uptime floor, recent failure pattern),
- load (in-flight usage relative to capacity).

The evaluator performs no I/O. Store data (rolling stats, in-flight counts)
is fetched by the caller and passed in.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from capmesh.core.config import EvaluationConfig, ScoringWeights

from .schemas.domain import CapabilityRequest, ProviderRecord, ProviderStats, ScoredCandidate

_WILDCARD_VALUES = (None, "*")


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class ProviderEvaluator:
    """Computes ``ScoredCandidate`` lists ranked by composite score."""

    def __init__(
        self,
        *,
        weights: Optional[ScoringWeights] = None,
        config: Optional[EvaluationConfig] = None,
    ) -> None:
        self.weights = weights or ScoringWeights()
        self.config = config or EvaluationConfig()

    def evaluate(
        self,
        candidates: Sequence[ProviderRecord],
        request: CapabilityRequest,
        *,
        stats: Optional[Mapping[str, ProviderStats]] = None,
        load: Optional[Mapping[str, int]] = None,
    ) -> List[ScoredCandidate]:
        """
        Score and rank candidates for a request.

        Args:
            candidates: Provider records to score.
            request: The capability request (interface requirements, consumer,
                load-balancing flag).
            stats: Rolling-window statistics keyed by provider id.
            load: In-flight usage counts keyed by provider id.

        Returns:
            Scored candidates sorted by composite score descending, then
            stability descending, then primary provider file ascending.
        """
        stats = stats or {}
        load = load or {}
        scored = [
            self.score(
                provider,
                request,
                stats=stats.get(provider.id),
                in_flight=load.get(provider.id, 0),
            )
            for provider in candidates
        ]
        return sorted(scored, key=lambda c: c.rank_key)

    def score(
        self,
        provider: ProviderRecord,
        request: CapabilityRequest,
        *,
        stats: Optional[ProviderStats] = None,
        in_flight: int = 0,
    ) -> ScoredCandidate:
        performance = self.performance_score(provider, stats)
        compatibility = self.compatibility_score(provider, request)
        stability = self.stability_score(provider, stats)
        load_score = self.load_score(provider, in_flight, enabled=request.requirements.load_balancing)
        w = self.weights
        composite = clamp(
            w.performance * performance
            + w.compatibility * compatibility
            + w.stability * stability
            + w.load * load_score
        )
        return ScoredCandidate(
            provider=provider,
            performance_score=performance,
            compatibility_score=compatibility,
            stability_score=stability,
            load_score=load_score,
            composite_score=composite,
        )

    def performance_score(self, provider: ProviderRecord, stats: Optional[ProviderStats]) -> float:
        if stats is None or stats.sample_count < self.config.min_samples:
            return clamp(provider.performance_score)
        latency = clamp(1.0 - stats.avg_response_time_ms / self.config.response_time_ceiling_ms)
        throughput = clamp(stats.throughput_per_minute / self.config.throughput_target_per_minute)
        return clamp(0.4 * stats.success_rate + 0.4 * latency + 0.2 * throughput)

    def compatibility_score(self, provider: ProviderRecord, request: CapabilityRequest) -> float:
        overlap = interface_overlap(request.requirements.interface_spec, provider.interface_spec)
        allowed = 1.0 if consumer_allowed(request.consumer, provider.compatible_with) else 0.0
        return clamp(0.7 * overlap + 0.3 * allowed)

    def stability_score(self, provider: ProviderRecord, stats: Optional[ProviderStats]) -> float:
        uptime = stats.uptime if stats is not None else 1.0
        failures = stats.consecutive_failures if stats is not None else 0
        min_uptime = self.config.min_uptime
        if uptime >= min_uptime:
            uptime_factor = 1.0
        else:
            uptime_factor = clamp(1.0 - (min_uptime - uptime) * 10.0)
        failure_factor = 1.0 / (1.0 + failures)
        return clamp(provider.stability_rating * uptime_factor * failure_factor)

    def load_score(self, provider: ProviderRecord, in_flight: int, *, enabled: bool = True) -> float:
        if not enabled:
            return 1.0
        capacity = provider.max_capacity or self.config.default_capacity
        return clamp(1.0 - in_flight / capacity)


def interface_overlap(required: Optional[Dict[str, Any]], offered: Dict[str, Any]) -> float:
    """Fraction of required interface keys the offered spec satisfies.

    A required value of ``None`` or ``"*"`` only requires the key to exist.
    """
    if not required:
        return 1.0
    matched = 0
    for key, value in required.items():
        if key not in offered:
            continue
        if value in _WILDCARD_VALUES or offered[key] == value:
            matched += 1
    return matched / len(required)


def consumer_allowed(consumer: str, compatible_with: Sequence[str]) -> bool:
    if not compatible_with:
        return True
    return "*" in compatible_with or consumer in compatible_with
