"""Circular dependency detection and resolution.

The detector walks the dependency graph formed by the request's capability
chain (``consumer -> chain[0] -> chain[1] -> ...``) and an adjacency map of
capability -> capabilities its provider depends on. Each back edge found
within ``max_depth`` edges yields one cycle, rotated to start at its smallest
node and de-duplicated. A node is only expanded again when reached by a
shorter path, so every cyclic region reachable from the consumer is reported
without enumerating all simple paths.

``CycleResolver`` tries, in order: lazy initialization, interface injection,
provider reorganization. Capability splitting is only ever suggested.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from capmesh.core.logging_config import get_logger

from .errors import CircularDependencyError
from .schemas.domain import BindingMode, CapabilityRequest, CycleReport, CycleStrategy, ScoredCandidate

logger = get_logger(__name__)


def normalize_cycle(cycle: Sequence[str]) -> Tuple[str, ...]:
    """Rotate a cycle so it starts at its smallest node."""
    if not cycle:
        return tuple()
    start = min(range(len(cycle)), key=lambda i: cycle[i])
    return tuple(cycle[start:]) + tuple(cycle[:start])


def render_cycle(cycle: Sequence[str]) -> str:
    return " -> ".join(list(cycle) + list(cycle[:1]))


class CycleDetector:
    """Bounded depth-first search for dependency cycles."""

    def __init__(self, adjacency: Optional[Mapping[str, Iterable[str]]] = None, *, max_depth: int = 10) -> None:
        self.adjacency: Dict[str, List[str]] = {k: list(v) for k, v in (adjacency or {}).items()}
        self.max_depth = max_depth

    def build_graph(
        self,
        starting_consumer: str,
        capability_chain: Sequence[str],
        adjacency: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> Dict[str, List[str]]:
        graph: Dict[str, List[str]] = {k: list(v) for k, v in self.adjacency.items()}
        for k, v in (adjacency or {}).items():
            graph[k] = list(v)
        previous = starting_consumer
        for node in capability_chain:
            edges = graph.setdefault(previous, [])
            if node not in edges:
                edges.append(node)
            previous = node
        return graph

    def detect(
        self,
        starting_consumer: str,
        capability_chain: Sequence[str],
        max_depth: Optional[int] = None,
        *,
        adjacency: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> CycleReport:
        """
        Report the dependency cycles reachable from ``starting_consumer``.

        Args:
            starting_consumer: The consumer that issued the outermost request.
            capability_chain: Capabilities resolved beneath it, outermost first.
            max_depth: Maximum number of edges followed from the start.
            adjacency: Extra capability -> dependencies edges; these replace
                the detector's own entries for the same keys.

        Returns:
            A ``CycleReport``. ``depth_exceeded`` is set when the walk was cut
            short by ``max_depth``.
        """
        depth_limit = self.max_depth if max_depth is None else max_depth
        graph = self.build_graph(starting_consumer, capability_chain, adjacency)

        found: List[Tuple[str, ...]] = []
        seen: Set[Tuple[str, ...]] = set()
        depth_exceeded = False
        path: List[str] = [starting_consumer]
        on_path: Dict[str, int] = {starting_consumer: 0}
        # Shallowest depth each node was expanded at; a node is expanded again
        # only when reached by a strictly shorter path, so the walk stays
        # within max_depth * edges.
        expanded_at: Dict[str, int] = {}

        def visit(node: str) -> None:
            nonlocal depth_exceeded
            expanded_at[node] = len(path) - 1
            for nxt in graph.get(node, []):
                if nxt in on_path:
                    cycle = normalize_cycle(path[on_path[nxt]:])
                    if cycle not in seen:
                        seen.add(cycle)
                        found.append(cycle)
                    continue
                if len(path) > depth_limit:
                    depth_exceeded = True
                    continue
                if expanded_at.get(nxt, depth_limit + 1) <= len(path):
                    continue
                path.append(nxt)
                on_path[nxt] = len(path) - 1
                visit(nxt)
                path.pop()
                del on_path[nxt]

        visit(starting_consumer)

        if depth_exceeded:
            logger.warning(
                "Dependency walk from %s exceeded max depth %d; result may be incomplete",
                starting_consumer,
                depth_limit,
            )
        if found:
            logger.debug("Detected %d dependency cycle(s) from %s", len(found), starting_consumer)
        return CycleReport(found=bool(found), cycles=[list(c) for c in found], depth_exceeded=depth_exceeded)


@dataclass(frozen=True)
class CycleResolution:
    """The strategy that broke a cycle and how to bind afterwards."""

    strategy: CycleStrategy
    candidate: ScoredCandidate
    mode: BindingMode
    suggestions: List[str] = field(default_factory=list)


class CycleResolver:
    """Applies cycle-breaking strategies in priority order."""

    @staticmethod
    def splitting_suggestions(report: CycleReport, capability: str) -> List[str]:
        suggestions: List[str] = []
        for cycle in report.cycles:
            target = capability if capability in cycle else cycle[0]
            suggestions.append(
                f"split capability '{target}' into independent parts to break {render_cycle(cycle)}"
            )
        return suggestions

    def resolve(
        self,
        report: CycleReport,
        request: CapabilityRequest,
        selected: ScoredCandidate,
        scored: Sequence[ScoredCandidate],
        recheck: Callable[[ScoredCandidate], CycleReport],
    ) -> CycleResolution:
        """
        Break the detected cycles or raise.

        Args:
            report: The detection report (``found`` must be True).
            request: The request being resolved.
            selected: The candidate picked by the selector.
            scored: All evaluated candidates, best first.
            recheck: Re-runs detection as if the given candidate were bound.

        Returns:
            The applied resolution.

        Raises:
            CircularDependencyError: When no strategy applies.
        """
        suggestions = self.splitting_suggestions(report, request.capability)

        if selected.provider.lazy_init:
            logger.info("Breaking cycle for %s with lazy initialization", request.capability)
            return CycleResolution(CycleStrategy.lazy_initialization, selected, BindingMode.lazy, suggestions)

        if request.requirements.interface_spec:
            logger.info("Breaking cycle for %s with interface injection", request.capability)
            return CycleResolution(
                CycleStrategy.interface_injection, selected, BindingMode.interface_stub, suggestions
            )

        for alternate in scored:
            if alternate.provider.id == selected.provider.id or alternate.provider.depends_on:
                continue
            if not recheck(alternate).found:
                logger.info(
                    "Breaking cycle for %s by binding dependency-free provider %s",
                    request.capability,
                    alternate.provider.primary_file,
                )
                return CycleResolution(
                    CycleStrategy.provider_reorganization, alternate, BindingMode.eager, suggestions
                )

        raise CircularDependencyError(report.cycles, suggestions=suggestions)
