"""
File metadata entity.

Maps logical file ids (optionally scoped to a client) to concrete paths for
the file path resolution sub-path.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field

from ..base import Base
from ._json import utc_now


class FileRow(Base, table=True):
    """Table: cm_files"""

    __tablename__ = "cm_files"

    id: str = Field(primary_key=True, max_length=64)
    file_id: str = Field(max_length=256, index=True)
    file_path: str = Field(description="Resolved location of the file")
    client_id: Optional[str] = Field(default=None, max_length=128, index=True)
    status: str = Field(default="active", max_length=16)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
