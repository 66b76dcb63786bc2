"""Binding manager.

Turns a selected provider into an immutable ``Binding``:

- a unique, unguessable binding id,
- the interface handed to the consumer (provider interface spec, the
  consumer's required keys and the provider entrypoint),
- a monitoring subscription through the optional ``BindingMonitor``,
- a durable ``binding_created`` audit event in the metadata store.

Monitoring and audit failures never fail the binding. They are logged and
reflected on the returned binding (``monitoring.enabled=False`` or
``persisted=False``).
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from capmesh.core.logging_config import get_logger

from .repos.interfaces import BindingMonitor, MetadataStore
from .schemas.domain import (
    Binding,
    BindingMode,
    BindingMonitoring,
    MonitoringLevel,
    ProviderRecord,
)

logger = get_logger(__name__)

BINDING_CREATED_EVENT = "binding_created"


class BindingManager:
    """Creates bindings and records them."""

    def __init__(
        self,
        store: MetadataStore,
        *,
        monitor: Optional[BindingMonitor] = None,
        store_timeout_seconds: float = 2.0,
        monitoring_timeout_seconds: float = 0.5,
    ) -> None:
        self.store = store
        self.monitor = monitor
        self.store_timeout_seconds = store_timeout_seconds
        self.monitoring_timeout_seconds = monitoring_timeout_seconds
        self._sequence = itertools.count(1)

    def new_binding_id(self, consumer: str, provider: ProviderRecord, capability: str, created_at: datetime) -> str:
        seed = "|".join(
            [consumer, provider.id, capability, created_at.isoformat(), str(next(self._sequence))]
        )
        return "bind_" + hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]

    @staticmethod
    def build_interface(
        provider: ProviderRecord, interface_requirements: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        interface: Dict[str, Any] = dict(provider.interface_spec)
        interface["entrypoint"] = provider.primary_file
        if interface_requirements:
            interface["required"] = dict(interface_requirements)
        return interface

    async def create_binding(
        self,
        consumer: str,
        provider: ProviderRecord,
        capability: str,
        interface_requirements: Optional[Dict[str, Any]] = None,
        *,
        mode: BindingMode = BindingMode.eager,
        composite_score: Optional[float] = None,
    ) -> Binding:
        """
        Create, monitor and record a binding.

        Args:
            consumer: The requesting consumer id.
            provider: The selected provider record.
            capability: The requested capability name.
            interface_requirements: The consumer's required interface keys.
            mode: How the consumer should initialize the provider.
            composite_score: Score of the selected candidate (recorded in the audit event).

        Returns:
            The immutable binding. ``persisted`` is False when the audit event
            could not be written.
        """
        created_at = datetime.now(timezone.utc)
        binding = Binding(
            id=self.new_binding_id(consumer, provider, capability, created_at),
            consumer=consumer,
            provider=provider.primary_file,
            provider_id=provider.id,
            capability=capability,
            interface=self.build_interface(provider, interface_requirements),
            created_at=created_at,
            monitoring=BindingMonitoring(),
            mode=mode,
        )

        if self.monitor is not None:
            binding = binding.model_copy(update={"monitoring": await self._register_monitoring(binding)})

        persisted = await self._record(binding, composite_score)
        if not persisted:
            binding = binding.model_copy(update={"persisted": False})

        logger.info(
            "Created binding %s: %s -> %s (%s, mode=%s)",
            binding.id,
            consumer,
            binding.provider,
            capability,
            mode.value,
        )
        return binding

    async def _register_monitoring(self, binding: Binding) -> BindingMonitoring:
        assert self.monitor is not None
        try:
            await asyncio.wait_for(self.monitor.register(binding), timeout=self.monitoring_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Monitoring registration timed out for binding %s", binding.id)
            return BindingMonitoring(enabled=False, level=MonitoringLevel.none)
        except Exception as e:
            logger.warning("Monitoring registration failed for binding %s: %s", binding.id, e)
            return BindingMonitoring(enabled=False, level=MonitoringLevel.none)
        return BindingMonitoring(enabled=True, level=MonitoringLevel.standard)

    async def _record(self, binding: Binding, composite_score: Optional[float]) -> bool:
        payload: Dict[str, Any] = {
            "binding_id": binding.id,
            "consumer": binding.consumer,
            "provider": binding.provider,
            "provider_id": binding.provider_id,
            "capability": binding.capability,
            "mode": binding.mode.value,
            "created_at": binding.created_at.isoformat(),
        }
        if composite_score is not None:
            payload["composite_score"] = composite_score
        try:
            await asyncio.wait_for(
                self.store.record_audit_event(BINDING_CREATED_EVENT, payload),
                timeout=self.store_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Persisting binding %s timed out; returning unpersisted binding", binding.id)
            return False
        except Exception as e:
            logger.warning("Persisting binding %s failed: %s", binding.id, e)
            return False
        return True
