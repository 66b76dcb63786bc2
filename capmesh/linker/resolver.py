"""Capability resolver.

The resolver is the entry point of the linker. A consumer asks for a
capability and gets back either a ``ResolutionSuccess`` (with a ``Binding``
to a concrete provider) or a structured ``ResolutionFailure``. Resolution
failures are never raised; only task cancellation propagates.

State machine
-------------

Each resolution walks an explicit loop of typed state handlers sharing one
``ResolutionContext``::

    RECEIVED -> CACHE_CHECK -> CACHE_HIT -> DONE
                            -> REGISTRY_QUERY -> NO_PROVIDERS -> GAP_HANDLING -> DONE | FAILED
                                              -> EVALUATE -> SELECT -> CYCLE_CHECK -> BIND
                                                 -> CACHE_WRITE -> DONE

``RECEIVED`` short-circuits file path requests to the ``FilePathResolver``.
Any ``LinkerError`` raised by a handler moves the context to ``FAILED``.

Store access
------------

Every store call is bounded by ``store_timeout_seconds`` and calls slower
than ``store_target_ms`` are logged. The provider query is retried once
after ``store_retry_backoff_seconds``; if it still fails a relaxed retry is
attempted through the gap handler before the failure is returned.
"""

from __future__ import annotations

import asyncio
import re
import time
import warnings
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from capmesh.core.config import Settings
from capmesh.core.config import settings as default_settings
from capmesh.core.logging_config import get_logger
from capmesh.core.monitoring import log_resolution, resolution_span

from .binding import BindingManager
from .cache import ResolutionCache
from .cycles import CycleDetector, CycleResolver
from .errors import (
    CircularDependencyError,
    InvalidRequest,
    LinkerError,
    ResolutionError,
    ResolutionTimeout,
    StorePersistenceWarning,
)
from .evaluator import ProviderEvaluator
from .files import FilePathResolver
from .gap import GapHandler, GapOutcome
from .metrics import LoadTracker, MetricsSnapshot, ResolutionMetrics
from .registry import ProviderHandleRegistry
from .repos.interfaces import BindingMonitor, EscalationNotifier, GenerationOracle, MetadataStore
from .schemas.domain import (
    STORE_PERSISTENCE_WARNING,
    Binding,
    BindingMode,
    CapabilityDefinition,
    CapabilityRequest,
    CycleStrategy,
    ErrorKind,
    ProviderFilters,
    ProviderRecord,
    ProviderStatus,
    RegistrationResult,
    ResolutionFailure,
    ResolutionResult,
    ResolutionSuccess,
    ScoredCandidate,
    SelectionAlgorithm,
)
from .selector import ProviderSelector, RotationState

logger = get_logger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.:/-]+$")


class ResolutionState(str, Enum):
    RECEIVED = "received"
    CACHE_CHECK = "cache_check"
    CACHE_HIT = "cache_hit"
    REGISTRY_QUERY = "registry_query"
    NO_PROVIDERS = "no_providers"
    GAP_HANDLING = "gap_handling"
    EVALUATE = "evaluate"
    SELECT = "select"
    CYCLE_CHECK = "cycle_check"
    BIND = "bind"
    CACHE_WRITE = "cache_write"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = (ResolutionState.DONE, ResolutionState.FAILED)


@dataclass
class ResolutionContext:
    """Typed intermediate values of one resolution."""

    request: CapabilityRequest
    algorithm: SelectionAlgorithm
    filters: ProviderFilters
    write_cache: bool = True
    candidates: List[ProviderRecord] = field(default_factory=list)
    scored: List[ScoredCandidate] = field(default_factory=list)
    selected: Optional[ScoredCandidate] = None
    mode: BindingMode = BindingMode.eager
    cycle_strategy: Optional[CycleStrategy] = None
    binding: Optional[Binding] = None
    result: Optional[ResolutionResult] = None
    error: Optional[LinkerError] = None
    warnings: List[str] = field(default_factory=list)
    history: List[ResolutionState] = field(default_factory=list)


StateHandler = Callable[[ResolutionContext], Awaitable[ResolutionState]]


class CapabilityResolver:
    """Resolves capability requests to provider bindings.

    All collaborators are optional except the store; defaults are built from
    ``settings``.
    """

    def __init__(
        self,
        store: MetadataStore,
        *,
        settings: Optional[Settings] = None,
        cache: Optional[ResolutionCache[Binding]] = None,
        file_resolver: Optional[FilePathResolver] = None,
        evaluator: Optional[ProviderEvaluator] = None,
        selector: Optional[ProviderSelector] = None,
        binding_manager: Optional[BindingManager] = None,
        detector: Optional[CycleDetector] = None,
        cycle_resolver: Optional[CycleResolver] = None,
        oracle: Optional[GenerationOracle] = None,
        monitor: Optional[BindingMonitor] = None,
        notifier: Optional[EscalationNotifier] = None,
        handles: Optional[ProviderHandleRegistry] = None,
        metrics: Optional[ResolutionMetrics] = None,
        load: Optional[LoadTracker] = None,
    ) -> None:
        self.settings = settings or default_settings
        s = self.settings
        self.store = store
        self.cache: ResolutionCache[Binding] = cache or ResolutionCache(
            max_size=s.cache.max_size, default_ttl_ms=s.cache.default_ttl_ms, namespace="capability"
        )
        self.file_resolver = file_resolver or FilePathResolver(
            store,
            config=s.files,
            cache=ResolutionCache(max_size=s.cache.max_size, default_ttl_ms=s.cache.file_ttl_ms, namespace="file"),
            store_timeout_seconds=s.store_timeout_seconds,
        )
        self.evaluator = evaluator or ProviderEvaluator(weights=s.weights, config=s.evaluation)
        self.selector = selector or ProviderSelector(
            rotation=RotationState(), near_top_tolerance=s.evaluation.near_top_tolerance
        )
        self.binding_manager = binding_manager or BindingManager(
            store,
            monitor=monitor,
            store_timeout_seconds=s.store_timeout_seconds,
            monitoring_timeout_seconds=s.monitoring_timeout_seconds,
        )
        self.detector = detector or CycleDetector(max_depth=s.cycle_max_depth)
        self.cycle_resolver = cycle_resolver or CycleResolver()
        self.gap = GapHandler(
            store,
            self._bind_with_filters,
            oracle=oracle,
            notifier=notifier,
            on_recovered=self.invalidate_capability,
            store_timeout_seconds=s.store_timeout_seconds,
            health_retry_interval_seconds=s.health_retry_interval_seconds,
        )
        self.handles = handles or ProviderHandleRegistry()
        self.resolution_metrics = metrics or ResolutionMetrics()
        self.load = load or LoadTracker()
        self.default_algorithm = SelectionAlgorithm(s.default_algorithm)

        self._handlers: Dict[ResolutionState, StateHandler] = {
            ResolutionState.RECEIVED: self._on_received,
            ResolutionState.CACHE_CHECK: self._on_cache_check,
            ResolutionState.CACHE_HIT: self._on_cache_hit,
            ResolutionState.REGISTRY_QUERY: self._on_registry_query,
            ResolutionState.NO_PROVIDERS: self._on_no_providers,
            ResolutionState.GAP_HANDLING: self._on_gap_handling,
            ResolutionState.EVALUATE: self._on_evaluate,
            ResolutionState.SELECT: self._on_select,
            ResolutionState.CYCLE_CHECK: self._on_cycle_check,
            ResolutionState.BIND: self._on_bind,
            ResolutionState.CACHE_WRITE: self._on_cache_write,
        }
        self._seeded_rotations: Set[str] = set()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_capability(self, request: CapabilityRequest) -> ResolutionResult:
        """
        Resolve a capability request.

        Args:
            request: The capability, the consumer and its requirements.

        Returns:
            ``ResolutionSuccess`` or ``ResolutionFailure``; never raises for
            resolution failures.
        """
        started = time.perf_counter()
        with resolution_span(request.capability, request.consumer):
            ctx = self._new_context(request)
            state = await self._drive(ctx, ResolutionState.RECEIVED)
            result = await self._finalize(ctx, state)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        result = result.model_copy(update={"resolution_time_ms": elapsed_ms})

        if isinstance(result, ResolutionSuccess):
            self.resolution_metrics.record_success(elapsed_ms=elapsed_ms, cached=result.cached)
            log_resolution(
                request.capability,
                request.consumer,
                ok=True,
                elapsed_ms=elapsed_ms,
                cached=result.cached,
                provider=result.provider,
            )
        else:
            self.resolution_metrics.record_failure(elapsed_ms=elapsed_ms, kind=result.error.value)
            log_resolution(
                request.capability, request.consumer, ok=False, elapsed_ms=elapsed_ms, error=result.error.value
            )
        snap = self.resolution_metrics.snapshot()
        if snap.resolutions % max(1, self.settings.targets.min_samples) == 0:
            self.resolution_metrics.check_targets(self.settings.targets)
        return result

    async def resolve(self, capability: str, consumer: str, **requirements: Any) -> ResolutionResult:
        """Convenience wrapper building the ``CapabilityRequest``."""
        try:
            request = CapabilityRequest(capability=capability, consumer=consumer, requirements=requirements)
        except ValueError as e:
            return ResolutionFailure(
                capability=capability,
                error=ErrorKind.invalid_request,
                fallback_required=False,
                message=str(e),
            )
        return await self.resolve_capability(request)

    def _new_context(self, request: CapabilityRequest, filters: Optional[ProviderFilters] = None) -> ResolutionContext:
        reqs = request.requirements
        min_performance = reqs.min_performance
        if min_performance is None:
            min_performance = self.settings.default_min_performance
        return ResolutionContext(
            request=request,
            algorithm=reqs.algorithm or self.default_algorithm,
            filters=filters
            or ProviderFilters(
                statuses=[ProviderStatus.active],
                min_performance=min_performance,
                compatible_with=request.consumer,
            ),
        )

    async def _drive(self, ctx: ResolutionContext, state: ResolutionState) -> ResolutionState:
        try:
            while state not in TERMINAL_STATES:
                ctx.history.append(state)
                logger.debug("resolve[%s/%s] %s", ctx.request.capability, ctx.request.consumer, state.value)
                state = await self._handlers[state](ctx)
        except LinkerError as e:
            ctx.error = e
            state = ResolutionState.FAILED
        except Exception as e:
            logger.exception("Unexpected error resolving %s", ctx.request.capability)
            ctx.error = ResolutionError(f"Resolution failed: {e}")
            state = ResolutionState.FAILED
        ctx.history.append(state)
        return state

    async def _finalize(self, ctx: ResolutionContext, state: ResolutionState) -> ResolutionResult:
        if state == ResolutionState.DONE and ctx.result is not None:
            return ctx.result

        failure = ctx.result if isinstance(ctx.result, ResolutionFailure) else self._failure_from_error(ctx)
        if failure.error != ErrorKind.invalid_request and failure.stale_binding is None:
            try:
                stale = await self.cache.peek_stale(ctx.request.capability, ctx.request.consumer)
            except Exception as e:
                logger.warning("Stale cache lookup failed for %s: %s", ctx.request.capability, e)
                stale = None
            if stale is not None:
                failure = failure.model_copy(update={"stale_binding": stale})
        log = logger.info if failure.fallback_required else logger.warning
        log("Resolution of %s for %s failed: %s", failure.capability, ctx.request.consumer, failure.error.value)
        return failure

    @staticmethod
    def _failure_from_error(ctx: ResolutionContext) -> ResolutionFailure:
        error = ctx.error or ResolutionError("Resolution ended without a result")
        cycles: List[List[str]] = []
        suggestions: List[str] = []
        if isinstance(error, CircularDependencyError):
            cycles = error.cycles
            suggestions = error.suggestions
        return ResolutionFailure(
            capability=ctx.request.capability,
            error=error.kind,
            fallback_required=error.fallback_required,
            message=str(error),
            cycles=cycles,
            suggestions=suggestions,
        )

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    async def _on_received(self, ctx: ResolutionContext) -> ResolutionState:
        request = ctx.request
        for label, value in (("capability", request.capability), ("consumer", request.consumer)):
            if not value or not _NAME_PATTERN.match(value):
                raise InvalidRequest(f"Invalid {label}: {value!r}")
        if request.is_file_resolution:
            ctx.result = await self.file_resolver.resolve(request)
            return ResolutionState.DONE if ctx.result.ok else ResolutionState.FAILED
        return ResolutionState.CACHE_CHECK

    async def _on_cache_check(self, ctx: ResolutionContext) -> ResolutionState:
        try:
            lookup = await self.cache.get(ctx.request.capability, ctx.request.consumer)
        except Exception as e:
            logger.warning("Cache read failed for %s, treating as miss: %s", ctx.request.capability, e)
            return ResolutionState.REGISTRY_QUERY
        if lookup.hit and lookup.value is not None:
            ctx.binding = lookup.value
            return ResolutionState.CACHE_HIT
        return ResolutionState.REGISTRY_QUERY

    async def _on_cache_hit(self, ctx: ResolutionContext) -> ResolutionState:
        assert ctx.binding is not None
        ctx.result = self._success(ctx, cached=True)
        return ResolutionState.DONE

    async def _on_registry_query(self, ctx: ResolutionContext) -> ResolutionState:
        try:
            ctx.candidates = await self._query_providers_with_retry(ctx.request.capability, ctx.filters)
        except ResolutionError as e:
            relaxed = await self.gap.retry_relaxed(ctx.request)
            if relaxed is None:
                raise
            logger.warning("Registry query for %s failed (%s); relaxed retry succeeded", ctx.request.capability, e)
            ctx.result = relaxed
            return ResolutionState.DONE
        if not ctx.candidates:
            return ResolutionState.NO_PROVIDERS
        return ResolutionState.EVALUATE

    async def _on_no_providers(self, ctx: ResolutionContext) -> ResolutionState:
        logger.info("No usable providers for %s; starting gap handling", ctx.request.capability)
        return ResolutionState.GAP_HANDLING

    async def _on_gap_handling(self, ctx: ResolutionContext) -> ResolutionState:
        outcome = await self.gap.handle_no_providers(ctx.request)
        if outcome.recovered and outcome.success is not None:
            ctx.result = outcome.success
            return ResolutionState.DONE
        ctx.result = self._failure_from_gap(ctx.request, outcome)
        return ResolutionState.FAILED

    async def _on_evaluate(self, ctx: ResolutionContext) -> ResolutionState:
        stats = await self._provider_stats([c.id for c in ctx.candidates])
        ctx.scored = self.evaluator.evaluate(ctx.candidates, ctx.request, stats=stats, load=self.load.snapshot())
        return ResolutionState.SELECT

    async def _on_select(self, ctx: ResolutionContext) -> ResolutionState:
        capability = ctx.request.capability
        round_robin = ctx.algorithm == SelectionAlgorithm.round_robin
        if round_robin:
            await self._seed_rotation(capability)
        ctx.selected = self.selector.select(
            ctx.scored,
            ctx.algorithm,
            capability=capability,
            load_balancing=ctx.request.requirements.load_balancing,
        )
        if round_robin:
            await self._persist_rotation(capability)
        return ResolutionState.CYCLE_CHECK

    async def _on_cycle_check(self, ctx: ResolutionContext) -> ResolutionState:
        assert ctx.selected is not None
        request = ctx.request
        chain = list(request.requirements.capability_chain)
        if not chain and not ctx.selected.provider.depends_on:
            return ResolutionState.BIND

        adjacency = await self._dependency_adjacency(request.capability, ctx.selected.provider)
        walk = chain + [request.capability]
        report = self.detector.detect(request.consumer, walk, adjacency=adjacency)
        if not report.found:
            return ResolutionState.BIND

        def recheck(candidate: ScoredCandidate):
            return self.detector.detect(
                request.consumer,
                walk,
                adjacency={**adjacency, request.capability: list(candidate.provider.depends_on)},
            )

        resolution = self.cycle_resolver.resolve(report, request, ctx.selected, ctx.scored, recheck)
        ctx.selected = resolution.candidate
        ctx.mode = resolution.mode
        ctx.cycle_strategy = resolution.strategy
        ctx.warnings.append(f"cycle_resolved:{resolution.strategy.value}")
        return ResolutionState.BIND

    async def _on_bind(self, ctx: ResolutionContext) -> ResolutionState:
        assert ctx.selected is not None
        request = ctx.request
        ctx.binding = await self.binding_manager.create_binding(
            request.consumer,
            ctx.selected.provider,
            request.capability,
            request.requirements.interface_spec,
            mode=ctx.mode,
            composite_score=ctx.selected.composite_score,
        )
        if not ctx.binding.persisted:
            ctx.warnings.append(STORE_PERSISTENCE_WARNING)
            warnings.warn(
                f"binding {ctx.binding.id} for {request.capability} was not persisted",
                StorePersistenceWarning,
                stacklevel=2,
            )
        return ResolutionState.CACHE_WRITE

    async def _on_cache_write(self, ctx: ResolutionContext) -> ResolutionState:
        assert ctx.binding is not None
        if ctx.write_cache:
            try:
                await self.cache.put(ctx.request.capability, ctx.request.consumer, ctx.binding)
            except Exception as e:
                logger.warning("Cache write failed for %s: %s", ctx.request.capability, e)
        ctx.result = self._success(ctx, cached=False)
        return ResolutionState.DONE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _success(self, ctx: ResolutionContext, *, cached: bool) -> ResolutionSuccess:
        binding = ctx.binding
        assert binding is not None
        selected = ctx.selected
        return ResolutionSuccess(
            capability=ctx.request.capability,
            provider=binding.provider,
            interface=binding.interface,
            binding_id=binding.id,
            binding=binding,
            cached=cached,
            composite_score=selected.composite_score if selected is not None else None,
            degraded=selected is not None and selected.provider.status == ProviderStatus.degraded,
            warnings=list(ctx.warnings),
        )

    @staticmethod
    def _failure_from_gap(request: CapabilityRequest, outcome: GapOutcome) -> ResolutionFailure:
        return ResolutionFailure(
            capability=request.capability,
            error=outcome.error,
            fallback_required=outcome.fallback_required,
            message=outcome.message,
            retry_after_seconds=outcome.retry_after_seconds,
            generation_requested=outcome.generation_requested,
            escalated=outcome.escalated,
        )

    async def _bind_with_filters(
        self, request: CapabilityRequest, filters: ProviderFilters
    ) -> Optional[ResolutionSuccess]:
        """Query with explicit filters and, if anything matches, evaluate, select and bind.

        Used by the gap handler; bindings made here are not cached.
        """
        ctx = self._new_context(request, filters)
        ctx.write_cache = False
        ctx.candidates = await self._store_call(
            self.store.query_providers(request.capability, filters), "query_providers"
        )
        if not ctx.candidates:
            return None
        state = await self._drive(ctx, ResolutionState.EVALUATE)
        if state != ResolutionState.DONE or not isinstance(ctx.result, ResolutionSuccess):
            if ctx.error is not None:
                raise ctx.error
            return None
        return ctx.result

    async def _store_call(self, awaitable: Awaitable[Any], operation: str) -> Any:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.store_timeout_seconds)
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            if elapsed_ms > self.settings.store_target_ms:
                logger.warning("Slow store call %s took %.1fms", operation, elapsed_ms)

    async def _query_providers_with_retry(self, capability: str, filters: ProviderFilters) -> List[ProviderRecord]:
        last: Optional[ResolutionError] = None
        for attempt in (1, 2):
            try:
                return await self._store_call(self.store.query_providers(capability, filters), "query_providers")
            except asyncio.TimeoutError:
                last = ResolutionTimeout(
                    f"Provider query for {capability} timed out after {self.settings.store_timeout_seconds}s"
                )
            except Exception as e:
                last = ResolutionError(f"Provider query for {capability} failed: {e}", details=repr(e))
            logger.warning("Provider query for %s failed (attempt %d): %s", capability, attempt, last)
            if attempt == 1:
                await asyncio.sleep(self.settings.store_retry_backoff_seconds)
        assert last is not None
        raise last

    async def _provider_stats(self, provider_ids: Sequence[str]) -> Dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(days=self.settings.evaluation.history_window_days)
        try:
            return await self._store_call(self.store.provider_stats(provider_ids, since=since), "provider_stats")
        except Exception as e:
            logger.warning("Provider stats unavailable, scoring from records: %s", e)
            return {}

    async def _seed_rotation(self, capability: str) -> None:
        if capability in self._seeded_rotations:
            return
        self._seeded_rotations.add(capability)
        try:
            pointer = await self._store_call(self.store.get_rotation_pointer(capability), "get_rotation_pointer")
        except Exception as e:
            logger.warning("Could not load rotation pointer of %s: %s", capability, e)
            return
        if pointer is not None:
            self.selector.rotation.seed(capability, pointer)

    async def _persist_rotation(self, capability: str) -> None:
        try:
            await self._store_call(
                self.store.set_rotation_pointer(capability, self.selector.rotation.get(capability)),
                "set_rotation_pointer",
            )
        except Exception as e:
            logger.warning("Could not persist rotation pointer of %s: %s", capability, e)

    async def _dependency_adjacency(self, capability: str, provider: ProviderRecord) -> Dict[str, List[str]]:
        """Capability -> dependencies, walked from the selected provider through the store."""
        adjacency: Dict[str, List[str]] = {capability: list(provider.depends_on)}
        frontier: List[str] = list(provider.depends_on)
        for _ in range(self.detector.max_depth):
            pending = [c for c in dict.fromkeys(frontier) if c not in adjacency]
            if not pending:
                break
            frontier = []
            for dep in pending:
                try:
                    providers = await self._store_call(
                        self.store.query_providers(dep, ProviderFilters()), "query_providers"
                    )
                except Exception as e:
                    logger.warning("Could not load dependencies of %s: %s", dep, e)
                    adjacency[dep] = []
                    continue
                deps = _union(p.depends_on for p in providers)
                adjacency[dep] = deps
                frontier.extend(deps)
        return adjacency

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def define_capability(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        category: Optional[str] = None,
        alternatives: Iterable[str] = (),
    ) -> CapabilityDefinition:
        definition = CapabilityDefinition(
            name=name, description=description, category=category, alternatives=list(alternatives)
        )
        await self._store_call(self.store.upsert_capability_definition(definition), "upsert_capability_definition")
        await self.invalidate(name)
        return definition

    async def register_provider(self, record: ProviderRecord, *, handle: Any = None) -> RegistrationResult:
        """
        Register (or update) a provider and optionally its implementation handle.

        Args:
            record: The provider record.
            handle: Optional callable/object implementing the provider.

        Returns:
            ``RegistrationResult``; ``registered`` is False when the store failed.
        """
        try:
            await self._store_call(self.store.upsert_provider(record), "upsert_provider")
        except Exception as e:
            logger.error("Failed to register provider %s for %s: %s", record.id, record.capability_name, e)
            return RegistrationResult(registered=False, capability=record.capability_name, provider_id=record.id)
        if handle is not None:
            self.handles.register(record.id, handle)
        await self.invalidate(record.capability_name)
        await self._audit(
            "provider_registered",
            {"capability": record.capability_name, "provider_id": record.id, "provider": record.primary_file},
        )
        logger.info("Registered provider %s for %s", record.primary_file, record.capability_name)
        return RegistrationResult(registered=True, capability=record.capability_name, provider_id=record.id)

    async def register_capability(
        self,
        module: str,
        function_name: str,
        provider_path: str,
        *,
        handle: Any = None,
        interface_spec: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> RegistrationResult:
        """
        Register a runtime-discovered function as a capability provider.

        The capability is named ``{module}_{function_name}``.

        Args:
            module: Module (or agent) name contributing the function.
            function_name: Function name.
            provider_path: Location of the implementation.
            handle: Optional callable implementing it.
            interface_spec: Optional interface description.
            description: Optional capability description.

        Returns:
            ``RegistrationResult``.
        """
        capability = f"{module}_{function_name}"
        if not _NAME_PATTERN.match(capability):
            logger.warning("Rejected registration of invalid capability name %r", capability)
            return RegistrationResult(
                registered=False, capability=capability, message=f"Invalid capability name: {capability!r}"
            )
        record = ProviderRecord(
            capability_name=capability,
            provider_files=[provider_path],
            interface_spec=dict(interface_spec or {}),
            stability_rating=0.8,
            performance_score=0.7,
            category="runtime_registered",
        )
        try:
            existing = await self._store_call(self.store.get_capability_definition(capability), "get_definition")
            if existing is None:
                await self._store_call(
                    self.store.upsert_capability_definition(
                        CapabilityDefinition(
                            name=capability,
                            description=description or f"{function_name} from {module}",
                            category="runtime_registered",
                        )
                    ),
                    "upsert_capability_definition",
                )
            await self._store_call(self.store.upsert_provider(record), "upsert_provider")
        except Exception as e:
            logger.error("Failed to register capability %s: %s", capability, e)
            return RegistrationResult(registered=False, capability=capability, message=str(e))

        if handle is not None:
            self.handles.register(record.id, handle)
        await self.invalidate(capability)
        await self._audit(
            "capability_registered",
            {"capability": capability, "module": module, "function": function_name, "provider": provider_path},
        )
        logger.info("Registered capability %s -> %s", capability, provider_path)
        return RegistrationResult(registered=True, capability=capability, provider_id=record.id)

    def get_handle(self, binding: Binding) -> Any:
        """Return the implementation behind a binding (``KeyError`` if none was registered)."""
        return self.handles.for_binding(binding)

    # ------------------------------------------------------------------
    # Usage tracking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def track_usage(self, binding: Binding) -> AsyncIterator[Binding]:
        """
        Count an in-flight use of a binding and report its outcome.

        Usage:
            async with resolver.track_usage(result.binding):
                await handle(...)
        """
        started = time.perf_counter()
        self.load.acquire(binding.provider_id)
        success = False
        try:
            yield binding
            success = True
        finally:
            self.load.release(binding.provider_id)
            await self.report_outcome(
                binding.provider_id, response_time_ms=(time.perf_counter() - started) * 1000.0, success=success
            )

    async def report_outcome(self, provider_id: str, *, response_time_ms: float, success: bool) -> None:
        try:
            await self._store_call(
                self.store.record_performance(provider_id, response_time_ms=response_time_ms, success=success),
                "record_performance",
            )
        except Exception as e:
            logger.warning("Could not record performance of %s: %s", provider_id, e)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def invalidate(self, capability: str, consumer: Optional[str] = None) -> int:
        removed = await self.cache.invalidate(capability, consumer)
        if removed:
            logger.debug("Invalidated %d cached binding(s) for %s", removed, capability)
        return removed

    async def invalidate_capability(self, capability: str) -> None:
        await self.invalidate(capability)

    def metrics(self) -> MetricsSnapshot:
        return self.resolution_metrics.snapshot()

    def performance_concerns(self) -> List[str]:
        return self.resolution_metrics.check_targets(self.settings.targets)

    async def _audit(self, kind: str, payload: Dict[str, Any]) -> None:
        try:
            await self._store_call(self.store.record_audit_event(kind, payload), "record_audit_event")
        except Exception as e:
            logger.warning("Could not record audit event %s: %s", kind, e)

    async def aclose(self) -> None:
        """Cancel background work (generation requests, health re-checks) and close the generation oracle."""
        await self.gap.aclose()
        close = getattr(self.gap.oracle, "aclose", None)
        if close is not None:
            await close()


def _union(lists: Iterable[Iterable[str]]) -> List[str]:
    return list(dict.fromkeys(item for items in lists for item in items))
