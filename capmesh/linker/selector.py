"""Provider selector.

Picks one candidate from an evaluated list using a pluggable algorithm:

- ``weighted_performance`` (default): top composite score; with load
  balancing, uniform random among candidates within ``near_top_tolerance``
  (5%) of the maximum.
- ``round_robin``: cycles through the candidates in a fixed order using a
  per-capability rotation pointer shared by the whole process.
- ``highest_scored``: deterministic top-1.

Selection never mutates the input list.
"""

from __future__ import annotations

import random
import threading
from typing import Callable, Dict, List, Optional, Sequence, Union

from capmesh.core.logging_config import get_logger

from .errors import NoCandidatesError
from .schemas.domain import ScoredCandidate, SelectionAlgorithm

logger = get_logger(__name__)


class RotationState:
    """Process-wide round-robin pointers, one mutex per capability.

    Concurrent callers for the same capability advance the pointer one at a
    time; different capabilities never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._pointers: Dict[str, int] = {}

    def _lock_for(self, capability: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(capability)
            if lock is None:
                lock = self._locks[capability] = threading.Lock()
            return lock

    def has(self, capability: str) -> bool:
        return capability in self._pointers

    def get(self, capability: str) -> int:
        return self._pointers.get(capability, 0)

    def seed(self, capability: str, position: int) -> None:
        """Set the pointer if it has not been used yet in this process."""
        with self._lock_for(capability):
            self._pointers.setdefault(capability, max(0, int(position)))

    def advance(self, capability: str, size: int) -> int:
        """
        Return the index to use for this call and move the pointer forward.

        Args:
            capability: Rotation key.
            size: Number of candidates in the rotation (must be positive).

        Returns:
            An index in ``range(size)``.
        """
        with self._lock_for(capability):
            position = self._pointers.get(capability, 0)
            self._pointers[capability] = position + 1
            return position % size


class ProviderSelector:
    """Chooses one ``ScoredCandidate`` per resolution."""

    def __init__(
        self,
        *,
        rotation: Optional[RotationState] = None,
        near_top_tolerance: float = 0.05,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.rotation = rotation or RotationState()
        self.near_top_tolerance = near_top_tolerance
        self._rng = rng or random.Random()
        self._strategies: Dict[SelectionAlgorithm, Callable[..., ScoredCandidate]] = {
            SelectionAlgorithm.weighted_performance: self._select_weighted_performance,
            SelectionAlgorithm.round_robin: self._select_round_robin,
            SelectionAlgorithm.highest_scored: self._select_highest_scored,
        }

    def select(
        self,
        scored: Sequence[ScoredCandidate],
        algorithm: Union[SelectionAlgorithm, str] = SelectionAlgorithm.weighted_performance,
        *,
        capability: Optional[str] = None,
        load_balancing: bool = True,
    ) -> ScoredCandidate:
        """
        Select a candidate.

        Args:
            scored: Evaluated candidates (any order).
            algorithm: Selection algorithm name.
            capability: Rotation key for ``round_robin``; defaults to the
                first candidate's capability name.
            load_balancing: Enables the near-top random pick of
                ``weighted_performance``.

        Returns:
            The selected candidate.

        Raises:
            NoCandidatesError: If ``scored`` is empty.
            ValueError: If the algorithm name is unknown.
        """
        if not scored:
            raise NoCandidatesError("cannot select a provider from an empty candidate list")
        algo = SelectionAlgorithm(algorithm)
        chosen = self._strategies[algo](
            list(scored),
            capability=capability or scored[0].provider.capability_name,
            load_balancing=load_balancing,
        )
        logger.debug(
            "Selected provider %s (%s, composite=%.4f) via %s",
            chosen.provider.id,
            chosen.provider.primary_file,
            chosen.composite_score,
            algo.value,
        )
        return chosen

    def _select_highest_scored(self, scored: List[ScoredCandidate], **_: object) -> ScoredCandidate:
        return min(scored, key=lambda c: c.rank_key)

    def _select_weighted_performance(
        self, scored: List[ScoredCandidate], *, load_balancing: bool, **_: object
    ) -> ScoredCandidate:
        if not load_balancing or len(scored) == 1:
            return self._select_highest_scored(scored)
        best = max(c.composite_score for c in scored)
        floor = best * (1.0 - self.near_top_tolerance)
        near_top = sorted((c for c in scored if c.composite_score >= floor), key=lambda c: c.rank_key)
        return self._rng.choice(near_top)

    def _select_round_robin(
        self, scored: List[ScoredCandidate], *, capability: str, **_: object
    ) -> ScoredCandidate:
        ordered = sorted(scored, key=lambda c: (c.provider.primary_file, c.provider.id))
        return ordered[self.rotation.advance(capability, len(ordered))]
