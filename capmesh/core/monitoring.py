"""
Logfire monitoring for the linker.

Tracing is opt-in: ``initialize_logfire`` configures Logfire only when
``CAPMESH_LOGFIRE_ENABLED`` is true and a token is set. Once configured it
instruments SQLAlchemy (metadata store queries) and HTTPX (generation service
calls), and the resolver reports every resolution through
``resolution_span`` and ``log_resolution``. While disabled those helpers do
nothing, so the resolver can call them unconditionally.
"""

from __future__ import annotations

from contextlib import nullcontext
from typing import Any, ContextManager, Optional

import logfire
from logfire import SamplingOptions

from capmesh.core.config import Settings
from capmesh.core.config import settings as default_settings
from capmesh.core.logging_config import get_logger

logger = get_logger(__name__)

_enabled = False


def is_enabled() -> bool:
    return _enabled


def initialize_logfire(settings: Optional[Settings] = None) -> bool:
    """
    Configure Logfire and its SQLAlchemy/HTTPX instrumentation.

    Args:
        settings: Settings to read the ``CAPMESH_LOGFIRE_*`` values from.

    Returns:
        True when Logfire was configured.
    """
    global _enabled
    cfg = (settings or default_settings).monitoring
    if not cfg.enabled:
        logger.info("Logfire monitoring is disabled. Set CAPMESH_LOGFIRE_ENABLED=true to enable.")
        return False
    if not cfg.token:
        logger.warning("Logfire is enabled but CAPMESH_LOGFIRE_TOKEN is not set; monitoring stays off.")
        return False

    try:
        logfire.configure(
            token=cfg.token,
            service_name=cfg.service_name,
            service_version=cfg.service_version,
            environment=cfg.environment,
            sampling=SamplingOptions(head=cfg.sample_rate),
        )
    except Exception as e:
        logger.error(f"Failed to initialize Logfire: {e}", exc_info=True)
        return False

    if cfg.trace_sqlalchemy:
        try:
            logfire.instrument_sqlalchemy()
            logger.info("Logfire: SQLAlchemy instrumentation enabled")
        except Exception as e:
            logger.warning(f"Failed to instrument SQLAlchemy: {e}")

    if cfg.trace_httpx:
        try:
            logfire.instrument_httpx()
            logger.info("Logfire: HTTPX instrumentation enabled")
        except Exception as e:
            logger.warning(f"Failed to instrument HTTPX: {e}")

    _enabled = True
    logger.info(f"Logfire monitoring initialized: service={cfg.service_name}, environment={cfg.environment}")
    return True


def resolution_span(capability: str, consumer: str) -> ContextManager[Any]:
    """Span around one resolution, or a no-op context while disabled."""
    if not _enabled:
        return nullcontext()
    return logfire.span("resolve {capability}", capability=capability, consumer=consumer)


def log_resolution(
    capability: str,
    consumer: str,
    *,
    ok: bool,
    elapsed_ms: float,
    cached: bool = False,
    provider: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Emit a Logfire event for a finished resolution."""
    if not _enabled:
        return
    try:
        if ok:
            logfire.info(
                "Capability resolved",
                capability=capability,
                consumer=consumer,
                provider=provider,
                cached=cached,
                duration_ms=elapsed_ms,
            )
        else:
            logfire.warn(
                "Capability resolution failed",
                capability=capability,
                consumer=consumer,
                error=error,
                duration_ms=elapsed_ms,
            )
    except Exception:
        logger.debug(f"Could not log resolution to Logfire: capability={capability}")
