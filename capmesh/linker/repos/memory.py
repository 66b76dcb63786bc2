"""In-memory metadata store.

A process-local implementation of ``MetadataStore`` for tests, local
development and embedding the linker without a database. Records are copied
on the way in and out so callers cannot mutate stored state.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..schemas.domain import (
    CapabilityDefinition,
    FileRecord,
    ProviderFilters,
    ProviderRecord,
    ProviderStats,
)
from .interfaces import MetadataStore
from .stats import Sample, aggregate


class InMemoryMetadataStore(MetadataStore):
    """Dictionary-backed ``MetadataStore``."""

    def __init__(self) -> None:
        self._providers: Dict[str, ProviderRecord] = {}
        self._definitions: Dict[str, CapabilityDefinition] = {}
        self._audit: List[Dict[str, Any]] = []
        self._rotation: Dict[str, int] = {}
        self._samples: Dict[str, List[Sample]] = defaultdict(list)
        self._files: Dict[str, FileRecord] = {}

    async def query_providers(self, capability: str, filters: ProviderFilters) -> List[ProviderRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._providers.values()
            if r.capability_name == capability and filters.matches(r)
        ]

    async def upsert_provider(self, record: ProviderRecord) -> None:
        existing = self._providers.get(record.id)
        stored = record.model_copy(deep=True)
        if existing is not None:
            stored.created_at = existing.created_at
            stored.updated_at = datetime.now(timezone.utc)
        self._providers[record.id] = stored

    async def get_capability_definition(self, name: str) -> Optional[CapabilityDefinition]:
        found = self._definitions.get(name)
        return found.model_copy(deep=True) if found is not None else None

    async def upsert_capability_definition(self, definition: CapabilityDefinition) -> None:
        self._definitions[definition.name] = definition.model_copy(deep=True)

    async def record_audit_event(self, kind: str, payload: Dict[str, Any]) -> None:
        self._audit.append({"kind": kind, "payload": dict(payload), "created_at": datetime.now(timezone.utc)})

    async def list_audit_events(self, kind: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        events = [e for e in reversed(self._audit) if kind is None or e["kind"] == kind]
        return events[:limit]

    async def get_rotation_pointer(self, capability: str) -> Optional[int]:
        return self._rotation.get(capability)

    async def set_rotation_pointer(self, capability: str, index: int) -> None:
        self._rotation[capability] = int(index)

    async def record_performance(self, provider_id: str, *, response_time_ms: float, success: bool) -> None:
        self._samples[provider_id].append(
            Sample(recorded_at=datetime.now(timezone.utc), response_time_ms=float(response_time_ms), success=success)
        )

    async def provider_stats(self, provider_ids: Sequence[str], *, since: datetime) -> Dict[str, ProviderStats]:
        return {
            pid: aggregate(self._samples[pid], since=since)
            for pid in provider_ids
            if self._samples.get(pid)
        }

    async def query_files(self, file_id: str, client_id: Optional[str] = None) -> List[FileRecord]:
        return [
            f.model_copy(deep=True)
            for f in self._files.values()
            if f.status == "active"
            and f.file_id == file_id
            and (f.client_id is None or f.client_id == client_id)
        ]

    async def upsert_file(self, record: FileRecord) -> None:
        self._files[record.id] = record.model_copy(deep=True)

    def get_provider(self, provider_id: str) -> Optional[ProviderRecord]:
        """Synchronous accessor for tests and embedding code."""
        found = self._providers.get(provider_id)
        return found.model_copy(deep=True) if found is not None else None
