"""
Database layer for the CapMesh metadata store.

Structure:
- entities/: SQLModel table entities (capabilities, providers, performance
  samples, audit events, rotation pointers, file metadata)
- utils.py: Engine and session factory helpers
"""

from .base import Base
from .utils import (
    create_all,
    create_engine,
    create_sessionmaker,
)

__all__ = [
    "Base",
    "create_all",
    "create_engine",
    "create_sessionmaker",
]
