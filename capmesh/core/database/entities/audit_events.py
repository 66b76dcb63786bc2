"""
Audit event entity.

Append-only log of linker activity (bindings created, registrations,
escalations, health recovery checks).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import DateTime
from sqlmodel import Field

from ..base import Base
from ._json import dumps, loads, utc_now


class AuditEventRow(Base, table=True):
    """Entity for audit events.

    Table: cm_audit_events
    """

    __tablename__ = "cm_audit_events"

    id: str = Field(primary_key=True, max_length=64)
    kind: str = Field(max_length=64, index=True)
    payload: str = Field(default="{}", description="JSON event payload data")
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), index=True)

    def get_payload_dict(self) -> Dict[str, Any]:
        return dict(loads(self.payload, {}))

    def set_payload_dict(self, payload: Dict[str, Any]) -> None:
        self.payload = dumps(payload)

    def __repr__(self) -> str:
        return f"AuditEventRow(id={self.id}, kind={self.kind})"
