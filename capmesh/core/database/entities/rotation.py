"""Round-robin rotation pointer entity (one row per capability)."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field

from ..base import Base
from ._json import utc_now


class RotationPointerRow(Base, table=True):
    """Table: cm_rotation_pointers"""

    __tablename__ = "cm_rotation_pointers"

    capability: str = Field(primary_key=True, max_length=256)
    position: int = Field(default=0)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
