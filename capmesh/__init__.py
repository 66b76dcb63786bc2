"""CapMesh.

This package contains the capability resolution and binding engine (the
"dynamic linker") of a multi-agent automation platform. Agents ask for a
*capability* by name and the linker picks a concrete *provider* at runtime.

High-level architecture
-----------------------

- ``capmesh.linker``:

  - The ``CapabilityResolver`` state machine (cache, registry query,
    evaluation, selection, cycle check, binding).
  - Scoring, selection, binding, cycle and gap-handling components.
  - Metadata store interfaces with in-memory and SQL implementations.

- ``capmesh.core``:

  - Settings (``pydantic-settings``), logging configuration and the
    SQLModel / async SQLAlchemy database layer.

Typical workflow
----------------

1. Build a store (``InMemoryMetadataStore`` or ``SqlMetadataStore``).
2. Build a resolver with ``capmesh.linker.factory.build_resolver``.
3. Register capabilities and providers.
4. Call ``resolve_capability`` and use the returned binding; wrap each use
   in ``track_usage`` so load and performance feed future scoring.
"""
