from __future__ import annotations

"""Convenience factories for wiring the linker.

This module contains small helpers to build a ``CapabilityResolver`` with
its default collaborators and to build the SQL metadata store from a
database URL.

The intent is to keep application wiring and tests concise, while still
allowing deployments to provide their own store, oracle, monitor and
notifier.
"""

from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine

from capmesh.core.config import Settings
from capmesh.core.config import settings as default_settings
from capmesh.core.database import create_engine, create_sessionmaker
from capmesh.core.logging_config import setup_logging
from capmesh.core.monitoring import initialize_logfire

from .generation import HttpGenerationClient, NullGenerationOracle
from .repos.interfaces import BindingMonitor, EscalationNotifier, GenerationOracle, MetadataStore
from .repos.sql import SqlMetadataStore
from .resolver import CapabilityResolver


def build_generation_oracle(settings: Optional[Settings] = None) -> GenerationOracle:
    """Build the HTTP generation client when a service URL is configured."""
    s = settings or default_settings
    if s.codegen_url:
        return HttpGenerationClient(s.codegen_url, auth_token=s.codegen_auth_token)
    return NullGenerationOracle()


def build_sql_store(
    database_url: Optional[str] = None, *, settings: Optional[Settings] = None
) -> Tuple[SqlMetadataStore, AsyncEngine]:
    """Create an engine and a ``SqlMetadataStore`` bound to it.

    The caller owns the engine and should ``await engine.dispose()`` on shutdown.
    """
    s = settings or default_settings
    engine = create_engine(database_url or s.database_url)
    return SqlMetadataStore(create_sessionmaker(engine)), engine


def build_resolver(
    store: MetadataStore,
    *,
    settings: Optional[Settings] = None,
    oracle: Optional[GenerationOracle] = None,
    monitor: Optional[BindingMonitor] = None,
    notifier: Optional[EscalationNotifier] = None,
    configure_logging: bool = False,
    enable_monitoring: bool = False,
) -> CapabilityResolver:
    """Construct a ``CapabilityResolver`` from settings and collaborators.

    Args:
        store: Metadata store implementation.
        settings: Settings to use; defaults to the process-wide settings.
        oracle: Generation oracle; defaults to ``build_generation_oracle``.
        monitor: Optional binding monitor.
        notifier: Optional escalation notifier (defaults to logging).
        configure_logging: Call ``setup_logging`` with the settings' levels.
        enable_monitoring: Call ``initialize_logfire`` (a no-op unless Logfire
            is enabled and has a token).
    """
    s = settings or default_settings
    if configure_logging:
        setup_logging(log_level=s.log_level, log_format=s.log_format, enable_file=s.enable_file_logging)
    if enable_monitoring:
        initialize_logfire(s)
    return CapabilityResolver(
        store,
        settings=s,
        oracle=oracle if oracle is not None else build_generation_oracle(s),
        monitor=monitor,
        notifier=notifier,
    )
