"""File path resolution.

Requests for ``file_resolution_<file_id>`` capabilities (or with
``resolution_type=file_path``) bypass provider scoring. The path is found by:

1. the file cache (separate namespace, longer TTL),
2. file metadata in the store, choosing the best match (exact name, then
   client-specific, then most recently updated, then shortest path),
3. constructing candidate paths from patterns (client-specific, exact match,
   system default, each with extension variants) and taking the first that
   is a readable file under ``base_dir``.

File ids and client ids are single path segments; anything containing a
separator or ``..`` is rejected as an invalid request.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path, PurePath
from typing import List, Optional, Sequence

from capmesh.core.config import FileResolutionConfig
from capmesh.core.logging_config import get_logger

from .cache import ResolutionCache
from .errors import InvalidRequest
from .repos.interfaces import MetadataStore
from .schemas.domain import (
    CapabilityRequest,
    ErrorKind,
    FileRecord,
    FileResolution,
    ResolutionFailure,
    ResolutionResult,
    ResolutionSuccess,
    ResolutionType,
)

logger = get_logger(__name__)

GLOBAL_CLIENT = "_global"


def best_match(records: Sequence[FileRecord], file_id: str, client_id: Optional[str]) -> Optional[FileRecord]:
    """Pick the most specific file record for a lookup."""
    if not records:
        return None

    def key(r: FileRecord) -> tuple:
        p = PurePath(r.file_path)
        exact = p.name == file_id or p.stem == file_id
        client_specific = client_id is not None and r.client_id == client_id
        return (not exact, not client_specific, -r.updated_at.timestamp(), len(r.file_path))

    return min(records, key=key)


def check_path_segment(value: Optional[str], label: str) -> None:
    """Raise ``InvalidRequest`` unless ``value`` is None or a plain path segment."""
    if value is None:
        return
    if not value or ".." in value or "/" in value or "\\" in value or "\x00" in value:
        raise InvalidRequest(f"Invalid {label}: {value!r}")


class FilePathResolver:
    """Resolves logical file ids to concrete paths."""

    def __init__(
        self,
        store: MetadataStore,
        *,
        config: Optional[FileResolutionConfig] = None,
        cache: Optional[ResolutionCache[FileResolution]] = None,
        store_timeout_seconds: float = 2.0,
    ) -> None:
        self.store = store
        self.config = config or FileResolutionConfig()
        self.cache: ResolutionCache[FileResolution] = cache or ResolutionCache(
            default_ttl_ms=600_000, namespace="file"
        )
        self.store_timeout_seconds = store_timeout_seconds

    async def resolve(self, request: CapabilityRequest) -> ResolutionResult:
        file_id = request.file_id
        client_id = request.requirements.client_id
        try:
            found = await self.locate(file_id, client_id)
        except InvalidRequest as e:
            logger.warning("Rejected file lookup %r (client=%r): %s", file_id, client_id, e)
            return ResolutionFailure(
                capability=request.capability,
                error=ErrorKind.invalid_request,
                fallback_required=False,
                message=str(e),
            )
        if found.path is None:
            logger.warning("File %s not found (client=%s)", file_id, client_id)
            return ResolutionFailure(
                capability=request.capability,
                error=ErrorKind.file_not_found,
                fallback_required=True,
                message=f"File not found: {file_id}",
            )
        return ResolutionSuccess(
            capability=request.capability,
            provider="file_system",
            interface={"type": "file_access", "path": found.path, "method": found.method},
            cached=found.cached,
            resolution_type=ResolutionType.file_path,
            resolved_path=found.path,
            fallback_used=found.fallback_used,
        )

    async def locate(self, file_id: str, client_id: Optional[str] = None) -> FileResolution:
        """
        Find the path of a logical file.

        Args:
            file_id: Logical file id (name without extension, or a file name).
            client_id: Optional client scope.

        Returns:
            A ``FileResolution``; ``path`` is None when nothing was found.

        Raises:
            InvalidRequest: ``file_id`` or ``client_id`` is not a plain path segment.
        """
        check_path_segment(file_id, "file id")
        check_path_segment(client_id, "client id")
        cache_consumer = client_id or GLOBAL_CLIENT
        try:
            lookup = await self.cache.get(file_id, cache_consumer)
        except Exception as e:
            logger.warning("File cache read failed for %s: %s", file_id, e)
        else:
            if lookup.hit and lookup.value is not None:
                return lookup.value.model_copy(update={"cached": True})

        resolution = await self._from_metadata(file_id, client_id)
        if resolution is None:
            resolution = await self._construct_path(file_id, client_id)
        if resolution.path is not None:
            try:
                await self.cache.put(file_id, cache_consumer, resolution)
            except Exception as e:
                logger.warning("File cache write failed for %s: %s", file_id, e)
        return resolution

    async def _from_metadata(self, file_id: str, client_id: Optional[str]) -> Optional[FileResolution]:
        try:
            records = await asyncio.wait_for(
                self.store.query_files(file_id, client_id), timeout=self.store_timeout_seconds
            )
        except Exception as e:
            logger.warning("File metadata lookup for %s failed, constructing path: %s", file_id, e)
            return None
        chosen = best_match(records, file_id, client_id)
        if chosen is None:
            return None
        alternatives = [r.file_path for r in records if r.id != chosen.id]
        logger.debug("Resolved file %s from metadata: %s", file_id, chosen.file_path)
        return FileResolution(path=chosen.file_path, method="metadata", alternatives=alternatives)

    def candidate_paths(self, file_id: str, client_id: Optional[str]) -> List[str]:
        """Relative candidates in priority order, extension variants included."""
        patterns: List[str] = []
        if client_id:
            patterns.extend(self.config.client_patterns)
        patterns.extend(self.config.exact_patterns)
        patterns.extend(self.config.system_patterns)

        candidates: List[str] = []
        for pattern in patterns:
            base = pattern.format(file_id=file_id, client_id=client_id or "")
            for ext in self.config.extensions:
                candidate = base + ext
                if candidate not in candidates:
                    candidates.append(candidate)
        return candidates

    async def _construct_path(self, file_id: str, client_id: Optional[str]) -> FileResolution:
        candidates = self.candidate_paths(file_id, client_id)
        base_dir = Path(self.config.base_dir)
        found = await asyncio.to_thread(_first_readable, base_dir, candidates)
        if found is None:
            return FileResolution(path=None, method="constructed", fallback_used=True, alternatives=candidates)
        logger.debug("Resolved file %s by path construction: %s", file_id, found)
        return FileResolution(path=found, method="constructed", fallback_used=True)


def _first_readable(base_dir: Path, candidates: Sequence[str]) -> Optional[str]:
    root = base_dir.resolve()
    for candidate in candidates:
        path = base_dir / candidate
        # Patterns are configurable; never return anything outside base_dir.
        if not path.resolve().is_relative_to(root):
            logger.warning("Skipping candidate outside %s: %s", root, candidate)
            continue
        if path.is_file() and os.access(path, os.R_OK):
            return str(path)
    return None
