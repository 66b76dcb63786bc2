from __future__ import annotations

"""SQLAlchemy async metadata store.

This module provides the database-backed implementation of the
``MetadataStore`` interface defined in ``capmesh.linker.repos.interfaces``.

Usage
-----

- Create an async engine with ``capmesh.core.database.create_engine``.
- Create tables with ``create_all`` (tests/dev) or Alembic migrations.
- Create a session factory with ``create_sessionmaker``.
- Build the store with ``SqlMetadataStore(session_factory)``.

Transaction model
-----------------

Each method opens an ``AsyncSession``, performs its operation, and commits.
Every audit event, performance sample and rotation pointer is durable when
the method returns. Timestamps are stored as timezone-aware UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from capmesh.core.database.entities import (
    AuditEventRow,
    CapabilityDefinitionRow,
    FileRow,
    PerformanceSampleRow,
    ProviderRow,
    RotationPointerRow,
)
from capmesh.core.database.entities._json import dumps, utc_now

from ..schemas.domain import (
    CapabilityDefinition,
    FileRecord,
    ProviderFilters,
    ProviderRecord,
    ProviderStats,
    ProviderStatus,
)
from .interfaces import MetadataStore
from .stats import Sample, aggregate, as_utc


def _provider_from_row(row: ProviderRow) -> ProviderRecord:
    return ProviderRecord(
        id=row.id,
        capability_name=row.capability_name,
        provider_files=row.get_list("provider_files"),
        interface_spec=row.get_interface_spec(),
        stability_rating=row.stability_rating,
        performance_score=row.performance_score,
        status=ProviderStatus(row.status),
        compatible_with=row.get_list("compatible_with"),
        depends_on=row.get_list("depends_on"),
        lazy_init=row.lazy_init,
        max_capacity=row.max_capacity,
        category=row.category,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _file_from_row(row: FileRow) -> FileRecord:
    return FileRecord(
        id=row.id,
        file_id=row.file_id,
        file_path=row.file_path,
        client_id=row.client_id,
        status=row.status,
        updated_at=as_utc(row.updated_at),
    )


@dataclass(frozen=True)
class SqlMetadataStore(MetadataStore):
    """SQL implementation of ``MetadataStore``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def query_providers(self, capability: str, filters: ProviderFilters) -> List[ProviderRecord]:
        """
        List providers of a capability, filtered in SQL by status and score.

        The consumer allow-list filter is applied after loading because the
        list is stored as JSON text.
        """
        stmt = select(ProviderRow).where(
            ProviderRow.capability_name == capability,
            ProviderRow.status.in_([s.value for s in filters.statuses]),
        )
        if filters.min_performance is not None:
            stmt = stmt.where(ProviderRow.performance_score >= filters.min_performance)
        async with self.session_factory() as s:
            rows = (await s.execute(stmt)).scalars().all()
        records = [_provider_from_row(r) for r in rows]
        return [r for r in records if filters.matches(r)]

    async def upsert_provider(self, record: ProviderRecord) -> None:
        async with self.session_factory() as s:
            row = await s.get(ProviderRow, record.id)
            if row is None:
                row = ProviderRow(id=record.id, created_at=as_utc(record.created_at))
                s.add(row)
            row.capability_name = record.capability_name
            row.provider_files = dumps(record.provider_files)
            row.interface_spec = dumps(record.interface_spec)
            row.compatible_with = dumps(record.compatible_with)
            row.depends_on = dumps(record.depends_on)
            row.stability_rating = record.stability_rating
            row.performance_score = record.performance_score
            row.status = record.status.value
            row.lazy_init = record.lazy_init
            row.max_capacity = record.max_capacity
            row.category = record.category
            row.updated_at = utc_now()
            await s.commit()

    async def get_capability_definition(self, name: str) -> Optional[CapabilityDefinition]:
        async with self.session_factory() as s:
            row = await s.get(CapabilityDefinitionRow, name)
            if row is None:
                return None
            return CapabilityDefinition(
                name=row.name,
                description=row.description,
                category=row.category,
                alternatives=row.get_alternatives(),
                created_at=as_utc(row.created_at),
            )

    async def upsert_capability_definition(self, definition: CapabilityDefinition) -> None:
        async with self.session_factory() as s:
            row = await s.get(CapabilityDefinitionRow, definition.name)
            if row is None:
                row = CapabilityDefinitionRow(name=definition.name, created_at=as_utc(definition.created_at))
                s.add(row)
            row.description = definition.description
            row.category = definition.category
            row.set_alternatives(definition.alternatives)
            row.updated_at = utc_now()
            await s.commit()

    async def record_audit_event(self, kind: str, payload: Dict[str, Any]) -> None:
        async with self.session_factory() as s:
            row = AuditEventRow(id=str(uuid4()), kind=kind)
            row.set_payload_dict(payload)
            s.add(row)
            await s.commit()

    async def list_audit_events(self, kind: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        stmt = select(AuditEventRow)
        if kind is not None:
            stmt = stmt.where(AuditEventRow.kind == kind)
        stmt = stmt.order_by(AuditEventRow.created_at.desc()).limit(limit)
        async with self.session_factory() as s:
            rows = (await s.execute(stmt)).scalars().all()
        return [
            {"kind": r.kind, "payload": r.get_payload_dict(), "created_at": as_utc(r.created_at)}
            for r in rows
        ]

    async def get_rotation_pointer(self, capability: str) -> Optional[int]:
        async with self.session_factory() as s:
            row = await s.get(RotationPointerRow, capability)
            return row.position if row is not None else None

    async def set_rotation_pointer(self, capability: str, index: int) -> None:
        async with self.session_factory() as s:
            row = await s.get(RotationPointerRow, capability)
            if row is None:
                row = RotationPointerRow(capability=capability)
                s.add(row)
            row.position = int(index)
            row.updated_at = utc_now()
            await s.commit()

    async def record_performance(self, provider_id: str, *, response_time_ms: float, success: bool) -> None:
        async with self.session_factory() as s:
            s.add(
                PerformanceSampleRow(
                    id=str(uuid4()),
                    provider_id=provider_id,
                    response_time_ms=float(response_time_ms),
                    success=success,
                )
            )
            await s.commit()

    async def provider_stats(self, provider_ids: Sequence[str], *, since: datetime) -> Dict[str, ProviderStats]:
        if not provider_ids:
            return {}
        stmt = select(PerformanceSampleRow).where(
            PerformanceSampleRow.provider_id.in_(list(provider_ids)),
            PerformanceSampleRow.recorded_at >= as_utc(since),
        )
        async with self.session_factory() as s:
            rows = (await s.execute(stmt)).scalars().all()
        grouped: Dict[str, List[Sample]] = {}
        for r in rows:
            grouped.setdefault(r.provider_id, []).append(
                Sample(recorded_at=r.recorded_at, response_time_ms=r.response_time_ms, success=r.success)
            )
        now = datetime.now(timezone.utc)
        return {pid: aggregate(samples, since=since, now=now) for pid, samples in grouped.items()}

    async def query_files(self, file_id: str, client_id: Optional[str] = None) -> List[FileRecord]:
        stmt = select(FileRow).where(FileRow.file_id == file_id, FileRow.status == "active")
        if client_id is None:
            stmt = stmt.where(FileRow.client_id.is_(None))
        else:
            stmt = stmt.where(or_(FileRow.client_id.is_(None), FileRow.client_id == client_id))
        async with self.session_factory() as s:
            rows = (await s.execute(stmt)).scalars().all()
        return [_file_from_row(r) for r in rows]

    async def upsert_file(self, record: FileRecord) -> None:
        async with self.session_factory() as s:
            row = await s.get(FileRow, record.id)
            if row is None:
                row = FileRow(id=record.id, file_id=record.file_id, file_path=record.file_path)
                s.add(row)
            row.file_id = record.file_id
            row.file_path = record.file_path
            row.client_id = record.client_id
            row.status = record.status
            row.updated_at = utc_now()
            await s.commit()
