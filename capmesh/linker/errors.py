"""Error types raised inside the linker.

Purpose:
- Give every failure mode of a resolution a typed exception carrying the
  ``ErrorKind`` it maps to in a ``ResolutionFailure`` result.
- Keep the orchestrator's conversion from exception to structured result a
  single ``except LinkerError`` branch.

Usage:
- Components raise these; ``CapabilityResolver`` catches ``LinkerError`` and
  returns a ``ResolutionFailure`` built from ``kind``/``fallback_required``.
- ``StorePersistenceWarning`` is a warning category, not an error: a binding
  that could not be recorded is still returned.
"""

from __future__ import annotations

from typing import Any, List, Optional

from .schemas.domain import ErrorKind


class LinkerError(Exception):
    """Base error for linker failures.

    Args:
        message: Human-readable error description.
        details: Optional structured context for diagnosis.
    """

    kind: ErrorKind = ErrorKind.resolution_error
    fallback_required: bool = True

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.details = details


class InvalidRequest(LinkerError):
    """Raised for a malformed capability or consumer. Never retried."""

    kind = ErrorKind.invalid_request
    fallback_required = False


class NoProvidersAvailable(LinkerError):
    """Raised when the registry returned no usable provider for a capability."""

    kind = ErrorKind.no_providers_available

    def __init__(self, capability: str) -> None:
        super().__init__(f"No providers available for capability: {capability}")
        self.capability = capability


class NoCandidatesError(LinkerError):
    """Raised by the selector when given an empty candidate list."""

    kind = ErrorKind.no_providers_available


class ResolutionError(LinkerError):
    """Raised when the metadata store fails while querying providers."""

    kind = ErrorKind.resolution_error


class ResolutionTimeout(ResolutionError):
    """Raised when a store call exceeded its time bound (after the retry)."""

    kind = ErrorKind.resolution_timeout


class CircularDependencyError(LinkerError):
    """Raised when a dependency cycle could not be broken by any strategy.

    Args:
        cycles: Every detected cycle, each as an ordered list of node names.
        suggestions: Non-applied remediation hints (e.g. capability splits).
    """

    kind = ErrorKind.circular_dependency
    fallback_required = False

    def __init__(self, cycles: List[List[str]], *, suggestions: Optional[List[str]] = None) -> None:
        rendered = "; ".join(" -> ".join(c + c[:1]) for c in cycles)
        super().__init__(f"Circular dependency detected: {rendered}")
        self.cycles = cycles
        self.suggestions = list(suggestions or [])


class StorePersistenceWarning(UserWarning):
    """A binding was created but could not be durably recorded."""


class GenerationApiError(Exception):
    """Base error for code-generation service failures.

    Args:
        message: Human-readable error description.
        status_code: Optional HTTP status code associated with the failure.
        details: Optional structured payload from the server (e.g., JSON body).
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details
