from __future__ import annotations

import asyncio

import pytest

from capmesh.core.config import Settings
from capmesh.linker.cache import ResolutionCache
from capmesh.linker.errors import StorePersistenceWarning
from capmesh.linker.resolver import CapabilityResolver, ResolutionState
from capmesh.linker.schemas.domain import (
    STORE_PERSISTENCE_WARNING,
    BindingMode,
    CapabilityRequest,
    CapabilityRequirements,
    ErrorKind,
    FileRecord,
    ProviderStatus,
    ResolutionType,
    SelectionAlgorithm,
)


def _request(capability: str = "send_message", consumer: str = "agent_a", **requirements) -> CapabilityRequest:
    return CapabilityRequest(
        capability=capability, consumer=consumer, requirements=CapabilityRequirements(**requirements)
    )


@pytest.fixture
def fast_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(update={"store_timeout_seconds": 0.05})


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_highest_scored_selects_p1(self, resolver, store, make_provider) -> None:
        p1 = make_provider(path="providers/p1.py", performance_score=0.9, stability_rating=0.95)
        p2 = make_provider(path="providers/p2.py", performance_score=0.5, stability_rating=0.95)
        await resolver.register_provider(p1)
        await resolver.register_provider(p2)

        result = await resolver.resolve_capability(_request(algorithm=SelectionAlgorithm.highest_scored))

        assert result.ok is True
        assert result.provider == "providers/p1.py"
        assert result.binding.provider_id == p1.id
        scored = resolver.evaluator.evaluate([p1, p2], _request())
        assert scored[0].composite_score > scored[1].composite_score
        assert result.composite_score == pytest.approx(scored[0].composite_score)

    @pytest.mark.asyncio
    async def test_unknown_capability_summon_dragon(self, resolver) -> None:
        result = await resolver.resolve_capability(_request("summon_dragon"))

        assert result.ok is False
        assert result.error == ErrorKind.no_providers_available
        assert result.fallback_required is True
        assert result.escalated is True

    @pytest.mark.asyncio
    async def test_unknown_capability_with_generation(self, store, test_settings) -> None:
        class YesOracle:
            def __init__(self) -> None:
                self.requested = []

            async def can_auto_generate(self, capability):
                return True

            async def request_generation(self, capability, requirements):
                self.requested.append(capability)

        oracle = YesOracle()
        resolver = CapabilityResolver(store, settings=test_settings, oracle=oracle)

        result = await resolver.resolve_capability(_request("summon_dragon"))

        assert result.error == ErrorKind.no_providers_available
        assert result.fallback_required is True
        assert result.generation_requested is True
        await resolver.gap.drain()
        assert oracle.requested == ["summon_dragon"]

    @pytest.mark.asyncio
    async def test_convenience_resolve(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider())
        result = await resolver.resolve("send_message", "agent_a", algorithm="highest_scored")
        assert result.ok is True

        bad = await resolver.resolve("send_message", "agent_a", colour="blue")
        assert bad.error == ErrorKind.invalid_request


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_resolution_is_cached_with_same_binding(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider())

        first = await resolver.resolve_capability(_request())
        second = await resolver.resolve_capability(_request())

        assert first.cached is False
        assert second.cached is True
        assert second.binding_id == first.binding_id

    @pytest.mark.asyncio
    async def test_expired_binding_is_re_resolved(self, store, test_settings, make_provider, fake_clock) -> None:
        resolver = CapabilityResolver(
            store, settings=test_settings, cache=ResolutionCache(default_ttl_ms=1000, clock=fake_clock)
        )
        await resolver.register_provider(make_provider())

        first = await resolver.resolve_capability(_request())
        second = await resolver.resolve_capability(_request())
        fake_clock.advance(1.5)
        third = await resolver.resolve_capability(_request())

        assert second.cached is True
        assert third.cached is False
        assert third.binding_id != first.binding_id

    @pytest.mark.asyncio
    async def test_failure_carries_stale_binding(self, store, test_settings, make_provider, fake_clock) -> None:
        resolver = CapabilityResolver(
            store, settings=test_settings, cache=ResolutionCache(default_ttl_ms=1000, clock=fake_clock)
        )
        provider = make_provider()
        await store.upsert_provider(provider)
        first = await resolver.resolve_capability(_request())

        await store.upsert_provider(provider.model_copy(update={"status": ProviderStatus.disabled}))
        fake_clock.advance(2)
        result = await resolver.resolve_capability(_request())

        assert result.ok is False
        assert result.retry_after_seconds == pytest.approx(test_settings.health_retry_interval_seconds)
        assert result.stale_binding is not None
        assert result.stale_binding.id == first.binding_id
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_cache_errors_are_treated_as_misses(self, resolver, make_provider, monkeypatch) -> None:
        await resolver.register_provider(make_provider())

        async def broken(*args, **kwargs):
            raise RuntimeError("cache corrupted")

        monkeypatch.setattr(resolver.cache, "get", broken)
        monkeypatch.setattr(resolver.cache, "put", broken)

        result = await resolver.resolve_capability(_request())
        assert result.ok is True
        assert result.cached is False

    @pytest.mark.asyncio
    async def test_registration_invalidates_cache(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider())
        await resolver.resolve_capability(_request())

        await resolver.register_provider(make_provider(path="providers/p2.py"))
        result = await resolver.resolve_capability(_request())

        assert result.cached is False


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "capability,consumer",
        [("", "agent_a"), ("send message", "agent_a"), ("send_message", ""), ("send_message", "agent;drop")],
    )
    async def test_invalid_requests(self, resolver, capability, consumer) -> None:
        result = await resolver.resolve_capability(_request(capability, consumer))

        assert result.ok is False
        assert result.error == ErrorKind.invalid_request
        assert result.fallback_required is False
        assert resolver.metrics().failures_by_kind == {"invalid_request": 1}


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_query_timeout_returns_resolution_timeout(self, store, fast_settings, monkeypatch) -> None:
        calls = []

        async def hang(capability, filters):
            calls.append(capability)
            await asyncio.sleep(1)

        monkeypatch.setattr(store, "query_providers", hang)
        resolver = CapabilityResolver(store, settings=fast_settings)

        result = await resolver.resolve_capability(_request())

        assert result.error == ErrorKind.resolution_timeout
        assert result.fallback_required is True
        # two bounded attempts plus the relaxed retry
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_query_error_returns_resolution_error(self, store, fast_settings, monkeypatch) -> None:
        async def broken(capability, filters):
            raise ConnectionError("connection refused")

        monkeypatch.setattr(store, "query_providers", broken)
        resolver = CapabilityResolver(store, settings=fast_settings)

        result = await resolver.resolve_capability(_request())

        assert result.error == ErrorKind.resolution_error
        assert result.fallback_required is True
        assert "connection refused" in result.message

    @pytest.mark.asyncio
    async def test_query_recovers_on_retry(self, store, fast_settings, make_provider, monkeypatch) -> None:
        await store.upsert_provider(make_provider())
        original = store.query_providers
        attempts = []

        async def flaky(capability, filters):
            attempts.append(capability)
            if len(attempts) == 1:
                raise ConnectionError("blip")
            return await original(capability, filters)

        monkeypatch.setattr(store, "query_providers", flaky)
        result = await CapabilityResolver(store, settings=fast_settings).resolve_capability(_request())

        assert result.ok is True
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_persistence_failure_is_a_warning(self, resolver, store, make_provider, monkeypatch) -> None:
        await resolver.register_provider(make_provider())

        async def broken(kind, payload):
            raise ConnectionError("audit table locked")

        monkeypatch.setattr(store, "record_audit_event", broken)

        with pytest.warns(StorePersistenceWarning):
            result = await resolver.resolve_capability(_request())

        assert result.ok is True
        assert STORE_PERSISTENCE_WARNING in result.warnings
        assert result.binding.persisted is False

    @pytest.mark.asyncio
    async def test_stats_failure_falls_back_to_record_scores(self, resolver, store, make_provider, monkeypatch) -> None:
        await resolver.register_provider(make_provider(performance_score=0.9))

        async def broken(ids, *, since):
            raise ConnectionError("stats unavailable")

        monkeypatch.setattr(store, "provider_stats", broken)
        result = await resolver.resolve_capability(_request())

        assert result.ok is True

    @pytest.mark.asyncio
    async def test_cancellation_propagates_before_binding(self, store, test_settings, make_provider, monkeypatch) -> None:
        await store.upsert_provider(make_provider())
        original = store.query_providers
        started = asyncio.Event()

        async def slow(capability, filters):
            started.set()
            await asyncio.sleep(0.2)
            return await original(capability, filters)

        monkeypatch.setattr(store, "query_providers", slow)
        resolver = CapabilityResolver(store, settings=test_settings)

        task = asyncio.ensure_future(resolver.resolve_capability(_request()))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert await store.list_audit_events("binding_created") == []


class TestGapHandling:
    @pytest.mark.asyncio
    async def test_degraded_provider_via_relaxed_retry(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider(status=ProviderStatus.degraded))

        result = await resolver.resolve_capability(_request())

        assert result.ok is True
        assert result.degraded is True
        assert result.fallback_used is True

    @pytest.mark.asyncio
    async def test_min_performance_relaxed(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider(performance_score=0.3))

        result = await resolver.resolve_capability(_request(min_performance=0.8))

        assert result.ok is True
        assert result.fallback_used is True

    @pytest.mark.asyncio
    async def test_alternative_capability(self, resolver, make_provider) -> None:
        await resolver.define_capability("notify", alternatives=["send_message"])
        await resolver.register_provider(make_provider())

        result = await resolver.resolve_capability(_request("notify"))

        assert result.ok is True
        assert result.capability == "send_message"
        assert result.fallback_used is True

    @pytest.mark.asyncio
    async def test_known_capability_without_usable_providers(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider(status=ProviderStatus.disabled))

        result = await resolver.resolve_capability(_request())

        assert result.ok is False
        assert result.error == ErrorKind.no_providers_available
        assert result.fallback_required is True
        assert result.retry_after_seconds is not None
        assert result.escalated is False
        await resolver.aclose()


class TestCycles:
    @pytest.mark.asyncio
    async def test_chain_cycle_fails_without_strategy(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider(capability="A", path="providers/a.py"))

        result = await resolver.resolve_capability(_request("A", consumer="agent", capability_chain=["A", "B", "C"]))

        assert result.ok is False
        assert result.error == ErrorKind.circular_dependency
        assert result.fallback_required is False
        assert {frozenset(c) for c in result.cycles} == {frozenset({"A", "B", "C"})}
        assert result.suggestions

    @pytest.mark.asyncio
    async def test_lazy_provider_breaks_cycle(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider(capability="A", path="providers/a.py", lazy_init=True))

        result = await resolver.resolve_capability(_request("A", consumer="agent", capability_chain=["A", "B", "C"]))

        assert result.ok is True
        assert result.binding.mode == BindingMode.lazy
        assert "cycle_resolved:lazy_initialization" in result.warnings

    @pytest.mark.asyncio
    async def test_interface_stub_breaks_cycle(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider(capability="A", path="providers/a.py"))

        result = await resolver.resolve_capability(
            _request("A", consumer="agent", capability_chain=["A", "B"], interface_spec={"input": "*"})
        )

        assert result.ok is True
        assert result.binding.mode == BindingMode.interface_stub

    @pytest.mark.asyncio
    async def test_provider_dependency_cycle_reorganized(self, resolver, make_provider) -> None:
        dependent = make_provider(capability="A", path="providers/a_full.py", performance_score=0.9, depends_on=["B"])
        plain = make_provider(capability="A", path="providers/a_lite.py", performance_score=0.4)
        await resolver.register_provider(dependent)
        await resolver.register_provider(plain)
        await resolver.register_provider(make_provider(capability="B", path="providers/b.py", depends_on=["A"]))

        result = await resolver.resolve_capability(
            _request("A", consumer="agent", algorithm=SelectionAlgorithm.highest_scored)
        )

        assert result.ok is True
        assert result.binding.provider_id == plain.id
        assert "cycle_resolved:provider_reorganization" in result.warnings


class TestRoundRobin:
    @pytest.mark.asyncio
    async def test_rotation_is_fair_and_persisted(self, resolver, store, make_provider) -> None:
        providers = [make_provider(path=f"providers/p{i}.py") for i in range(3)]
        for p in providers:
            await resolver.register_provider(p)

        picks = []
        for i in range(9):
            result = await resolver.resolve_capability(
                _request(consumer=f"agent_{i}", algorithm=SelectionAlgorithm.round_robin)
            )
            picks.append(result.binding.provider_id)

        for p in providers:
            assert picks.count(p.id) == 3
        assert await store.get_rotation_pointer("send_message") == 9

    @pytest.mark.asyncio
    async def test_rotation_is_seeded_from_store(self, resolver, store, make_provider) -> None:
        providers = [make_provider(path=f"providers/p{i}.py") for i in range(3)]
        for p in providers:
            await resolver.register_provider(p)
        await store.set_rotation_pointer("send_message", 1)

        result = await resolver.resolve_capability(_request(algorithm=SelectionAlgorithm.round_robin))

        assert result.binding.provider == "providers/p1.py"


class TestRegistrationAndUsage:
    @pytest.mark.asyncio
    async def test_register_capability_and_get_handle(self, resolver, store) -> None:
        def create_invoice(amount: int) -> dict:
            return {"amount": amount}

        registration = await resolver.register_capability(
            "billing", "create_invoice", "agents/billing.r", handle=create_invoice
        )
        assert registration.registered is True
        assert registration.capability == "billing_create_invoice"

        definition = await store.get_capability_definition("billing_create_invoice")
        assert definition.category == "runtime_registered"
        assert await store.list_audit_events("capability_registered")

        result = await resolver.resolve_capability(_request("billing_create_invoice"))
        assert result.ok is True
        assert resolver.get_handle(result.binding)(5) == {"amount": 5}

        provider = store.get_provider(registration.provider_id)
        assert provider.stability_rating == pytest.approx(0.8)
        assert provider.performance_score == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_register_provider_store_failure(self, resolver, store, make_provider, monkeypatch) -> None:
        async def broken(record):
            raise ConnectionError("read-only replica")

        monkeypatch.setattr(store, "upsert_provider", broken)
        registration = await resolver.register_provider(make_provider())
        assert registration.registered is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("module,function_name", [("billing", "create invoice"), ("bad module!", "run")])
    async def test_register_capability_with_invalid_name_is_not_registered(
        self, resolver, store, module: str, function_name: str
    ) -> None:
        registration = await resolver.register_capability(module, function_name, "agents/billing.r")

        assert registration.registered is False
        assert registration.provider_id is None
        assert "Invalid capability name" in registration.message
        assert await store.get_capability_definition(registration.capability) is None
        assert await store.list_audit_events("capability_registered") == []

    @pytest.mark.asyncio
    async def test_track_usage_reports_outcomes(self, resolver, store, make_provider) -> None:
        provider = make_provider()
        await resolver.register_provider(provider)
        result = await resolver.resolve_capability(_request())

        async with resolver.track_usage(result.binding):
            assert resolver.load.in_flight(provider.id) == 1

        with pytest.raises(RuntimeError):
            async with resolver.track_usage(result.binding):
                raise RuntimeError("provider crashed")

        assert resolver.load.in_flight(provider.id) == 0
        stats = await store.provider_stats([provider.id], since=provider.created_at)
        assert stats[provider.id].sample_count == 2
        assert stats[provider.id].success_rate == pytest.approx(0.5)


class TestFilesAndMetrics:
    @pytest.mark.asyncio
    async def test_file_resolution_short_circuit(self, resolver, store) -> None:
        await store.upsert_file(FileRecord(file_id="invoice", file_path="r/invoice.r"))

        result = await resolver.resolve_capability(_request("file_resolution_invoice"))

        assert result.ok is True
        assert result.resolution_type == ResolutionType.file_path
        assert result.resolved_path == "r/invoice.r"

    @pytest.mark.asyncio
    async def test_file_not_found(self, resolver) -> None:
        result = await resolver.resolve_capability(_request("file_resolution_missing_file_xyz"))
        assert result.error == ErrorKind.file_not_found
        assert result.fallback_required is True

    @pytest.mark.asyncio
    async def test_file_id_cannot_leave_base_dir(self, store, test_settings: Settings, tmp_path) -> None:
        base = tmp_path / "base"
        base.mkdir()
        (tmp_path / "secret.txt").write_text("outside\n")
        settings = test_settings.model_copy(update={"file_base_dir": str(base)})
        resolver = CapabilityResolver(store, settings=settings)

        result = await resolver.resolve_capability(_request("file_resolution_../secret.txt"))

        assert result.ok is False
        assert result.error == ErrorKind.invalid_request
        assert result.fallback_required is False

    @pytest.mark.asyncio
    async def test_metrics_are_recorded(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider())
        await resolver.resolve_capability(_request())
        await resolver.resolve_capability(_request())
        await resolver.resolve_capability(_request("summon_dragon"))

        snap = resolver.metrics()
        assert snap.resolutions == 3
        assert snap.cache_hits == 1
        assert snap.failures == 1
        assert resolver.performance_concerns() == []

    @pytest.mark.asyncio
    async def test_state_history_covers_full_path(self, resolver, make_provider) -> None:
        await resolver.register_provider(make_provider())
        ctx = resolver._new_context(_request())
        state = await resolver._drive(ctx, ResolutionState.RECEIVED)

        assert state == ResolutionState.DONE
        assert ctx.history == [
            ResolutionState.RECEIVED,
            ResolutionState.CACHE_CHECK,
            ResolutionState.REGISTRY_QUERY,
            ResolutionState.EVALUATE,
            ResolutionState.SELECT,
            ResolutionState.CYCLE_CHECK,
            ResolutionState.BIND,
            ResolutionState.CACHE_WRITE,
            ResolutionState.DONE,
        ]
