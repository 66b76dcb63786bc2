"""Metadata store interfaces and implementations for the linker.

The repository layer is the persistence boundary of capability resolution.

Responsibilities
----------------

- Provide small async collaborator interfaces (Protocols) the resolver
  depends on: ``MetadataStore``, ``GenerationOracle``, ``BindingMonitor`` and
  ``EscalationNotifier``.
- Persist durable, auditable records of linker activity:

  - capability definitions and provider records,
  - audit events (append-only),
  - provider performance samples and their rolling-window aggregates,
  - round-robin rotation pointers,
  - file metadata for file path resolution.

Design notes
------------

The resolver is written against interfaces so it can run with:

- a SQL database (async SQLAlchemy implementation in ``repos.sql``),
- the in-memory store in ``repos.memory`` for tests and embedding.

The SQL implementation commits at method boundaries.
"""

from .interfaces import BindingMonitor, EscalationNotifier, GenerationOracle, MetadataStore
from .memory import InMemoryMetadataStore
from .sql import SqlMetadataStore

__all__ = [
    "MetadataStore",
    "GenerationOracle",
    "BindingMonitor",
    "EscalationNotifier",
    "InMemoryMetadataStore",
    "SqlMetadataStore",
]
