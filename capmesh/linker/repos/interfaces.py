from __future__ import annotations

"""Collaborator interface contracts.

The resolver depends on these Protocols instead of concrete implementations.

Contract guidelines
-------------------

- All methods are async; the resolver bounds each call with a timeout and
  treats a timeout as the corresponding error case.
- The metadata store is assumed consistent and queryable. Provider records
  are never hard-deleted (status transitions only).
- Audit events and performance samples are append-only.
- Collaborators outside the store (generation oracle, binding monitor,
  escalation notifier) are best-effort: the linker logs their failures and
  carries on.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from ..schemas.domain import (
    Binding,
    CapabilityDefinition,
    CapabilityRequirements,
    FileRecord,
    ProviderFilters,
    ProviderRecord,
    ProviderStats,
)


@runtime_checkable
class MetadataStore(Protocol):
    """Persistent metadata about capabilities, providers and linker activity."""

    async def query_providers(self, capability: str, filters: ProviderFilters) -> List[ProviderRecord]:
        """
        List providers registered for a capability.

        Args:
            capability: Capability name (lookup key).
            filters: Status / minimum performance / consumer compatibility filters.

        Returns:
            Matching provider records (any order).
        """
        ...

    async def upsert_provider(self, record: ProviderRecord) -> None:
        """
        Insert or update a provider record by id.

        Args:
            record: The provider record to persist.
        """
        ...

    async def get_capability_definition(self, name: str) -> Optional[CapabilityDefinition]:
        """
        Retrieve a capability definition.

        Args:
            name: Capability name.

        Returns:
            The definition if the capability is known, else None.
        """
        ...

    async def upsert_capability_definition(self, definition: CapabilityDefinition) -> None:
        """
        Insert or update a capability definition.

        Args:
            definition: The definition to persist.
        """
        ...

    async def record_audit_event(self, kind: str, payload: Dict[str, Any]) -> None:
        """
        Append an audit event.

        Args:
            kind: Event kind (e.g. 'binding_created').
            payload: JSON-serializable event details.
        """
        ...

    async def list_audit_events(self, kind: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """
        List audit events, newest first.

        Args:
            kind: Optional kind filter.
            limit: Max number of events to return.

        Returns:
            Events as dicts with ``kind``, ``payload`` and ``created_at``.
        """
        ...

    async def get_rotation_pointer(self, capability: str) -> Optional[int]:
        """
        Read the persisted round-robin pointer of a capability.

        Returns:
            The pointer, or None if never stored.
        """
        ...

    async def set_rotation_pointer(self, capability: str, index: int) -> None:
        """
        Persist the round-robin pointer of a capability.

        Args:
            capability: Capability name.
            index: Pointer value.
        """
        ...

    async def record_performance(self, provider_id: str, *, response_time_ms: float, success: bool) -> None:
        """
        Append one invocation outcome for a provider.

        Args:
            provider_id: The provider record id.
            response_time_ms: Observed response time.
            success: Whether the invocation succeeded.
        """
        ...

    async def provider_stats(self, provider_ids: Sequence[str], *, since: datetime) -> Dict[str, ProviderStats]:
        """
        Aggregate invocation outcomes into rolling-window statistics.

        Args:
            provider_ids: Providers to aggregate.
            since: Start of the window (inclusive).

        Returns:
            Stats keyed by provider id; providers without samples may be omitted.
        """
        ...

    async def query_files(self, file_id: str, client_id: Optional[str] = None) -> List[FileRecord]:
        """
        Find file metadata for a logical file id.

        Args:
            file_id: Logical file id or name pattern.
            client_id: Optional client scope; client-specific and global files are returned.

        Returns:
            Matching active file records.
        """
        ...

    async def upsert_file(self, record: FileRecord) -> None:
        """
        Insert or update file metadata.

        Args:
            record: The file record to persist.
        """
        ...


@runtime_checkable
class GenerationOracle(Protocol):
    """Opaque auto-generation collaborator (LLM / code generation)."""

    async def can_auto_generate(self, capability: str) -> bool:
        """
        Decide whether a missing capability could be generated.

        Args:
            capability: The missing capability name.

        Returns:
            True when generation is plausible.
        """
        ...

    async def request_generation(self, capability: str, requirements: CapabilityRequirements) -> None:
        """
        Ask for a capability to be generated. Must not block on completion.

        Args:
            capability: The missing capability name.
            requirements: Requirements of the request that exposed the gap.
        """
        ...


@runtime_checkable
class BindingMonitor(Protocol):
    """Monitoring subscription sink for new bindings."""

    async def register(self, binding: Binding) -> None:
        """
        Start monitoring a binding.

        Args:
            binding: The binding that was just created.
        """
        ...


@runtime_checkable
class EscalationNotifier(Protocol):
    """Receives escalations for capabilities that cannot be provided."""

    async def notify(self, capability: str, consumer: str, analysis: Dict[str, Any]) -> None:
        """
        Notify operators about a missing capability.

        Args:
            capability: The missing capability name.
            consumer: The consumer that requested it.
            analysis: Gap analysis details.
        """
        ...
