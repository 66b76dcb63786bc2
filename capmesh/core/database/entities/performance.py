"""
Provider performance sample entity.

Each row is one reported invocation outcome. Rolling-window statistics used
by the provider evaluator are aggregated from these samples.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field

from ..base import Base
from ._json import utc_now


class PerformanceSampleRow(Base, table=True):
    """Entity for provider invocation outcomes.

    Table: cm_provider_performance
    """

    __tablename__ = "cm_provider_performance"

    id: str = Field(primary_key=True, max_length=64)
    provider_id: str = Field(max_length=64, index=True)
    response_time_ms: float = Field(default=0.0)
    success: bool = Field(default=True)
    recorded_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), index=True)
