"""Gap handling (fallback chain) for requests without usable providers.

When the registry returns no usable provider the resolver hands the request
to ``GapHandler.handle_no_providers``, which tries in order:

0. a relaxed-requirements retry (degraded providers allowed, no minimum
   performance, no allow-list filter),
1. the alternative capabilities listed on the capability definition,
2. for a known capability with zero usable providers: a scheduled health
   recovery re-check and a transient, non-blocking failure,
3. for an unknown capability: auto-generation through the
   ``GenerationOracle`` (background task, the caller does not wait),
4. escalation through the ``EscalationNotifier``.

Collaborator failures (oracle, notifier, audit writes) are logged and never
raised to the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from capmesh.core.logging_config import get_logger

from .repos.interfaces import EscalationNotifier, GenerationOracle, MetadataStore
from .schemas.domain import (
    CapabilityRequest,
    ErrorKind,
    ProviderFilters,
    ProviderStatus,
    ResolutionSuccess,
)

logger = get_logger(__name__)

Rebind = Callable[[CapabilityRequest, ProviderFilters], Awaitable[Optional[ResolutionSuccess]]]
RecoveredCallback = Callable[[str], Awaitable[None]]

RELAXED_FILTERS = ProviderFilters(statuses=[ProviderStatus.active, ProviderStatus.degraded])
ALL_STATUSES = ProviderFilters(statuses=list(ProviderStatus))


@dataclass
class GapOutcome:
    """What gap handling achieved for one request."""

    recovered: bool = False
    success: Optional[ResolutionSuccess] = None
    strategy: str = ""
    error: ErrorKind = ErrorKind.no_providers_available
    fallback_required: bool = True
    message: str = ""
    retry_after_seconds: Optional[float] = None
    generation_requested: bool = False
    escalated: bool = False
    alternatives_tried: List[str] = field(default_factory=list)


class LoggingEscalationNotifier(EscalationNotifier):
    """Escalation sink that writes to the linker's error log."""

    def __init__(self, logger_name: str = "capmesh.linker.escalation") -> None:
        self._logger = get_logger(logger_name)

    async def notify(self, capability: str, consumer: str, analysis: Dict[str, Any]) -> None:
        self._logger.error(
            "Capability '%s' requested by '%s' cannot be provided; manual action required: %s",
            capability,
            consumer,
            analysis,
        )


class GapHandler:
    """Fallback chain for capabilities without usable providers.

    Args:
        store: Metadata store.
        rebind: Resolver callback that queries with the given filters and, if
            any provider matches, evaluates, selects and binds it.
        oracle: Optional auto-generation oracle.
        notifier: Escalation sink; defaults to ``LoggingEscalationNotifier``.
        on_recovered: Called with the capability when a health re-check finds
            providers again.
        store_timeout_seconds: Bound on every store call made here.
        health_retry_interval_seconds: Delay before a health re-check.
    """

    def __init__(
        self,
        store: MetadataStore,
        rebind: Rebind,
        *,
        oracle: Optional[GenerationOracle] = None,
        notifier: Optional[EscalationNotifier] = None,
        on_recovered: Optional[RecoveredCallback] = None,
        store_timeout_seconds: float = 2.0,
        health_retry_interval_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.rebind = rebind
        self.oracle = oracle
        self.notifier = notifier or LoggingEscalationNotifier()
        self.on_recovered = on_recovered
        self.store_timeout_seconds = store_timeout_seconds
        self.health_retry_interval_seconds = health_retry_interval_seconds
        self._tasks: Set[asyncio.Task] = set()
        self._health_checks: Dict[str, asyncio.Task] = {}

    async def handle_no_providers(self, request: CapabilityRequest) -> GapOutcome:
        """
        Run the fallback chain for a request.

        Args:
            request: The request that found no usable provider.

        Returns:
            A ``GapOutcome``; ``recovered`` is True when a binding was made.
        """
        capability = request.capability

        relaxed = await self.retry_relaxed(request)
        if relaxed is not None:
            return GapOutcome(recovered=True, success=relaxed, strategy="relaxed_requirements")

        alternative, tried = await self.try_alternatives(request)
        if alternative is not None:
            return GapOutcome(
                recovered=True, success=alternative, strategy="alternative_capability", alternatives_tried=tried
            )

        if await self._is_known(capability):
            self.schedule_health_recovery(capability)
            logger.warning(
                "Capability %s is known but has no usable providers; re-checking in %.0fs",
                capability,
                self.health_retry_interval_seconds,
            )
            return GapOutcome(
                strategy="health_recovery",
                message=f"No usable providers for capability: {capability}; providers may recover",
                retry_after_seconds=self.health_retry_interval_seconds,
                alternatives_tried=tried,
            )

        if await self._can_auto_generate(capability):
            self._spawn(self._request_generation(request), name=f"capmesh-generate-{capability}")
            logger.info("Requested auto-generation for missing capability %s", capability)
            return GapOutcome(
                strategy="auto_generation",
                message=f"Capability {capability} is not registered; generation requested",
                generation_requested=True,
                alternatives_tried=tried,
            )

        await self._escalate(request, tried)
        return GapOutcome(
            strategy="escalation",
            message=f"No providers available for capability: {capability}",
            escalated=True,
            alternatives_tried=tried,
        )

    async def retry_relaxed(self, request: CapabilityRequest) -> Optional[ResolutionSuccess]:
        """Retry with degraded providers allowed and no score or allow-list filter."""
        try:
            success = await self.rebind(request, RELAXED_FILTERS)
        except Exception as e:
            logger.warning("Relaxed retry for %s failed: %s", request.capability, e)
            return None
        if success is not None:
            logger.info("Resolved %s with relaxed requirements", request.capability)
            return success.model_copy(update={"fallback_used": True})
        return None

    async def try_alternatives(self, request: CapabilityRequest) -> tuple[Optional[ResolutionSuccess], List[str]]:
        """Try the alternative capabilities of the definition, in order."""
        try:
            definition = await self._bounded(self.store.get_capability_definition(request.capability))
        except Exception as e:
            logger.warning("Could not load definition of %s: %s", request.capability, e)
            return None, []
        if definition is None:
            return None, []

        tried: List[str] = []
        for alternative in definition.alternatives:
            if alternative == request.capability:
                continue
            tried.append(alternative)
            alt_request = request.model_copy(update={"capability": alternative})
            try:
                success = await self.rebind(alt_request, ProviderFilters())
            except Exception as e:
                logger.warning("Alternative %s for %s failed: %s", alternative, request.capability, e)
                continue
            if success is not None:
                logger.info("Resolved %s through alternative capability %s", request.capability, alternative)
                return success.model_copy(update={"fallback_used": True}), tried
        return None, tried

    def schedule_health_recovery(self, capability: str) -> None:
        """Schedule one re-check per capability; repeated calls reuse it."""
        running = self._health_checks.get(capability)
        if running is not None and not running.done():
            return
        task = self._spawn(self._health_recovery(capability), name=f"capmesh-health-{capability}")
        self._health_checks[capability] = task

    async def _health_recovery(self, capability: str) -> None:
        await asyncio.sleep(self.health_retry_interval_seconds)
        try:
            providers = await self._bounded(self.store.query_providers(capability, ProviderFilters()))
        except Exception as e:
            logger.warning("Health re-check of %s failed: %s", capability, e)
            return
        await self._audit("health_recovery", {"capability": capability, "providers_available": len(providers)})
        if not providers:
            logger.warning("Capability %s still has no usable providers", capability)
            return
        logger.info("Capability %s recovered with %d provider(s)", capability, len(providers))
        if self.on_recovered is not None:
            try:
                await self.on_recovered(capability)
            except Exception as e:
                logger.warning("Recovery callback for %s failed: %s", capability, e)

    async def _is_known(self, capability: str) -> bool:
        try:
            if await self._bounded(self.store.get_capability_definition(capability)) is not None:
                return True
            return bool(await self._bounded(self.store.query_providers(capability, ALL_STATUSES)))
        except Exception as e:
            logger.warning("Could not check whether %s is known: %s", capability, e)
            return False

    async def _can_auto_generate(self, capability: str) -> bool:
        if self.oracle is None:
            return False
        try:
            return bool(await self.oracle.can_auto_generate(capability))
        except Exception as e:
            logger.warning("Generation oracle failed for %s: %s", capability, e)
            return False

    async def _request_generation(self, request: CapabilityRequest) -> None:
        assert self.oracle is not None
        try:
            await self.oracle.request_generation(request.capability, request.requirements)
        except Exception as e:
            logger.warning("Generation request for %s failed: %s", request.capability, e)
            return
        await self._audit(
            "generation_requested", {"capability": request.capability, "consumer": request.consumer}
        )

    async def _escalate(self, request: CapabilityRequest, tried: List[str]) -> None:
        analysis: Dict[str, Any] = {
            "capability": request.capability,
            "consumer": request.consumer,
            "known": False,
            "auto_generation": False,
            "alternatives_tried": tried,
            "requirements": request.requirements.model_dump(mode="json", exclude_none=True),
        }
        logger.error("Escalating missing capability %s requested by %s", request.capability, request.consumer)
        try:
            await self.notifier.notify(request.capability, request.consumer, analysis)
        except Exception as e:
            logger.warning("Escalation notifier failed for %s: %s", request.capability, e)
        await self._audit("capability_escalated", analysis)

    async def _audit(self, kind: str, payload: Dict[str, Any]) -> None:
        try:
            await self._bounded(self.store.record_audit_event(kind, payload))
        except Exception as e:
            logger.warning("Could not record audit event %s: %s", kind, e)

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.store_timeout_seconds)

    def _spawn(self, coro: Awaitable[None], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending_tasks(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def drain(self) -> None:
        """Wait for every background task to finish."""
        pending = [t for t in self._tasks if not t.done()]
        while pending:
            await asyncio.gather(*pending, return_exceptions=True)
            pending = [t for t in self._tasks if not t.done()]

    async def aclose(self) -> None:
        """Cancel background tasks (generation requests, health re-checks)."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._health_checks.clear()
