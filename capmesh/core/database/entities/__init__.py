"""
SQLModel entities of the metadata store.

Importing this package registers every table on ``Base.metadata``.
"""

from .audit_events import AuditEventRow
from .capabilities import CapabilityDefinitionRow, ProviderRow
from .files import FileRow
from .performance import PerformanceSampleRow
from .rotation import RotationPointerRow

__all__ = [
    "AuditEventRow",
    "CapabilityDefinitionRow",
    "FileRow",
    "PerformanceSampleRow",
    "ProviderRow",
    "RotationPointerRow",
]
