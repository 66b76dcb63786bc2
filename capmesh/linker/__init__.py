"""Capability resolution and binding.

Design overview
---------------

A request ``(capability, consumer, requirements)`` flows through:

- ``cache``: TTL + LRU cache of bindings per ``(capability, consumer)``.
- ``repos``: the metadata store (provider registry, audit log, statistics).
- ``evaluator``: weighted composite of performance, compatibility,
  stability and load sub-scores.
- ``selector``: weighted performance, round robin or highest scored.
- ``cycles``: dependency cycle detection and breaking strategies.
- ``binding``: immutable bindings, monitoring and audit recording.
- ``gap``: fallback chain when no provider is usable (relaxed retry,
  alternatives, health recovery, auto-generation, escalation).
- ``files``: the file path resolution sub-path.

``resolver.CapabilityResolver`` orchestrates them; ``factory`` wires the
defaults.
"""

from .errors import (
    CircularDependencyError,
    GenerationApiError,
    InvalidRequest,
    LinkerError,
    NoCandidatesError,
    NoProvidersAvailable,
    ResolutionError,
    ResolutionTimeout,
    StorePersistenceWarning,
)
from .factory import build_resolver, build_sql_store
from .repos import InMemoryMetadataStore, MetadataStore, SqlMetadataStore
from .resolver import CapabilityResolver, ResolutionState
from .schemas import (
    CapabilityRequest,
    CapabilityRequirements,
    ProviderRecord,
    ResolutionFailure,
    ResolutionSuccess,
)

__all__ = [
    "CapabilityResolver",
    "ResolutionState",
    "build_resolver",
    "build_sql_store",
    "MetadataStore",
    "InMemoryMetadataStore",
    "SqlMetadataStore",
    "CapabilityRequest",
    "CapabilityRequirements",
    "ProviderRecord",
    "ResolutionSuccess",
    "ResolutionFailure",
    "LinkerError",
    "InvalidRequest",
    "NoProvidersAvailable",
    "NoCandidatesError",
    "ResolutionError",
    "ResolutionTimeout",
    "CircularDependencyError",
    "StorePersistenceWarning",
    "GenerationApiError",
]
