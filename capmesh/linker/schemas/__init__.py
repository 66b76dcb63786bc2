"""Typed data model of the linker (requests, providers, bindings, results)."""

from .base import BaseSchema, FrozenSchema
from .domain import (
    FILE_RESOLUTION_PREFIX,
    STORE_PERSISTENCE_WARNING,
    Binding,
    BindingMode,
    BindingMonitoring,
    CapabilityDefinition,
    CapabilityRequest,
    CapabilityRequirements,
    CycleReport,
    CycleStrategy,
    ErrorKind,
    FileRecord,
    FileResolution,
    MonitoringLevel,
    ProviderFilters,
    ProviderRecord,
    ProviderStats,
    ProviderStatus,
    RegistrationResult,
    ResolutionFailure,
    ResolutionResult,
    ResolutionSuccess,
    ResolutionType,
    ScoredCandidate,
    SelectionAlgorithm,
)

__all__ = [
    "BaseSchema",
    "Binding",
    "BindingMode",
    "BindingMonitoring",
    "CapabilityDefinition",
    "CapabilityRequest",
    "CapabilityRequirements",
    "CycleReport",
    "CycleStrategy",
    "ErrorKind",
    "FILE_RESOLUTION_PREFIX",
    "FileRecord",
    "FileResolution",
    "FrozenSchema",
    "MonitoringLevel",
    "ProviderFilters",
    "ProviderRecord",
    "ProviderStats",
    "ProviderStatus",
    "RegistrationResult",
    "ResolutionFailure",
    "ResolutionResult",
    "ResolutionSuccess",
    "ResolutionType",
    "STORE_PERSISTENCE_WARNING",
    "ScoredCandidate",
    "SelectionAlgorithm",
]
