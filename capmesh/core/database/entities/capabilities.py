"""
Capability definition and provider entity models.

A capability definition names an abstract unit of behavior; provider rows are
the concrete implementations registered against it. Several providers may
share one ``capability_name`` and compete during resolution. Providers are
never hard-deleted: they move between ``active``, ``degraded`` and
``disabled``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime
from sqlmodel import Field

from ..base import Base
from ._json import dumps, loads, utc_now


class CapabilityDefinitionRow(Base, table=True):
    """Entity for capability definitions.

    Table: cm_capabilities
    """

    __tablename__ = "cm_capabilities"

    name: str = Field(primary_key=True, max_length=256)
    description: Optional[str] = Field(default=None)
    category: Optional[str] = Field(default=None, max_length=64, index=True)
    alternatives: str = Field(default="[]", description="JSON list of alternative capability names")

    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    def get_alternatives(self) -> List[str]:
        return list(loads(self.alternatives, []))

    def set_alternatives(self, alternatives: List[str]) -> None:
        self.alternatives = dumps(list(alternatives))

    def __repr__(self) -> str:
        return f"CapabilityDefinitionRow(name={self.name}, category={self.category})"


class ProviderRow(Base, table=True):
    """Entity for capability providers.

    Table: cm_capability_providers
    """

    __tablename__ = "cm_capability_providers"

    id: str = Field(primary_key=True, max_length=64)
    capability_name: str = Field(max_length=256, index=True)

    provider_files: str = Field(default="[]", description="JSON list of implementation locations")
    interface_spec: str = Field(default="{}", description="JSON interface description")
    compatible_with: str = Field(default="[]", description="JSON consumer allow-list or tags")
    depends_on: str = Field(default="[]", description="JSON list of capabilities this provider needs")

    stability_rating: float = Field(default=1.0)
    performance_score: float = Field(default=0.5)
    status: str = Field(default="active", max_length=16, index=True)
    lazy_init: bool = Field(default=False)
    max_capacity: Optional[int] = Field(default=None)
    category: Optional[str] = Field(default=None, max_length=64)

    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    def get_list(self, column: str) -> List[str]:
        return list(loads(getattr(self, column), []))

    def get_interface_spec(self) -> Dict[str, Any]:
        return dict(loads(self.interface_spec, {}))

    def __repr__(self) -> str:
        return f"ProviderRow(id={self.id}, capability={self.capability_name}, status={self.status})"
