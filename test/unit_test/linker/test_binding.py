from __future__ import annotations

import asyncio

import pytest

from capmesh.linker.binding import BINDING_CREATED_EVENT, BindingManager
from capmesh.linker.schemas.domain import BindingMode, MonitoringLevel


class RecordingMonitor:
    def __init__(self) -> None:
        self.bindings = []

    async def register(self, binding) -> None:
        self.bindings.append(binding)


class FailingMonitor:
    async def register(self, binding) -> None:
        raise RuntimeError("monitoring backend down")


class SlowMonitor:
    async def register(self, binding) -> None:
        await asyncio.sleep(5)


@pytest.mark.asyncio
async def test_create_binding_records_audit_event(store, make_provider) -> None:
    provider = make_provider(interface_spec={"input": "text"})
    manager = BindingManager(store)

    binding = await manager.create_binding("agent_a", provider, "send_message", {"input": "text"})

    assert binding.id.startswith("bind_")
    assert len(binding.id) == len("bind_") + 32
    assert binding.provider == "providers/p1.py"
    assert binding.provider_id == provider.id
    assert binding.interface["input"] == "text"
    assert binding.interface["entrypoint"] == "providers/p1.py"
    assert binding.interface["required"] == {"input": "text"}
    assert binding.persisted is True
    assert binding.mode == BindingMode.eager
    assert binding.monitoring.enabled is False
    assert binding.monitoring.level == MonitoringLevel.none

    events = await store.list_audit_events(BINDING_CREATED_EVENT)
    assert events[0]["payload"]["binding_id"] == binding.id


@pytest.mark.asyncio
async def test_binding_ids_are_unique(store, make_provider) -> None:
    provider = make_provider()
    manager = BindingManager(store)
    ids = {(await manager.create_binding("agent_a", provider, "send_message")).id for _ in range(50)}
    assert len(ids) == 50


@pytest.mark.asyncio
async def test_monitor_registration(store, make_provider) -> None:
    monitor = RecordingMonitor()
    binding = await BindingManager(store, monitor=monitor).create_binding("agent_a", make_provider(), "send_message")

    assert binding.monitoring.enabled is True
    assert binding.monitoring.level == MonitoringLevel.standard
    assert [b.id for b in monitor.bindings] == [binding.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("monitor", [FailingMonitor(), SlowMonitor()])
async def test_monitor_failure_disables_monitoring(store, make_provider, monitor) -> None:
    manager = BindingManager(store, monitor=monitor, monitoring_timeout_seconds=0.01)
    binding = await manager.create_binding("agent_a", make_provider(), "send_message")

    assert binding.monitoring.enabled is False
    assert binding.persisted is True


@pytest.mark.asyncio
async def test_audit_failure_returns_unpersisted_binding(store, make_provider, monkeypatch) -> None:
    async def boom(kind, payload):
        raise ConnectionError("store unavailable")

    monkeypatch.setattr(store, "record_audit_event", boom)
    binding = await BindingManager(store).create_binding("agent_a", make_provider(), "send_message")

    assert binding.persisted is False


@pytest.mark.asyncio
async def test_audit_timeout_returns_unpersisted_binding(store, make_provider, monkeypatch) -> None:
    async def hang(kind, payload):
        await asyncio.sleep(5)

    monkeypatch.setattr(store, "record_audit_event", hang)
    manager = BindingManager(store, store_timeout_seconds=0.01)
    binding = await manager.create_binding("agent_a", make_provider(), "send_message", mode=BindingMode.lazy)

    assert binding.persisted is False
    assert binding.mode == BindingMode.lazy
