"""Code-generation oracle adapters.

Overview
--------
The gap handler asks a ``GenerationOracle`` whether a missing capability can
be generated and, if so, requests generation without waiting for it. Two
adapters are shipped:

- ``NullGenerationOracle``: never generates (the default).
- ``HttpGenerationClient``: thin async HTTP client for a code-generation
  service.

API
---
- ``GET  /capabilities/{name}/feasibility`` -> ``{"can_generate": bool, ...}``
- ``POST /generations`` with ``{"capability": ..., "requirements": {...}}``
  -> ``202`` / ``2xx`` with an optional ``{"id": ...}`` body.

Errors
------
HTTP and transport failures are raised as ``GenerationApiError`` carrying
the status code and response text where available. The gap handler logs
them and treats them as "cannot generate".
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from capmesh.core.logging_config import get_logger

from .errors import GenerationApiError
from .repos.interfaces import GenerationOracle
from .schemas.domain import CapabilityRequirements


class NullGenerationOracle(GenerationOracle):
    """Oracle that never offers auto-generation."""

    async def can_auto_generate(self, capability: str) -> bool:
        return False

    async def request_generation(self, capability: str, requirements: CapabilityRequirements) -> None:
        return None


class HttpGenerationClient(GenerationOracle):
    """Async HTTP client for the code-generation service.

    Responsibilities
    ----------------
    - Authenticate requests using a static token or a provider.
    - Ask the service whether a capability can be generated.
    - Submit generation requests (fire and forget from the caller's view).
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: Optional[str] = None,
        token_provider: Optional[Callable[[], str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Create a generation client.

        Args:
            base_url: Base URL of the service (e.g. ``http://localhost:8600``).
            auth_token: Authorization header value (e.g. ``"Bearer <jwt>"``).
            token_provider: Callable invoked to fetch a token before each request.
            timeout: Default HTTP timeout for the internal client.
            client: Optional preconfigured ``httpx.AsyncClient`` to use.
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._logger = get_logger(__name__)

    def _ensure_token(self) -> None:
        if self._token_provider is not None:
            try:
                self.auth_token = self._token_provider()
            except Exception as e:
                self._logger.warning("HttpGenerationClient token_provider failed: %s", e)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = self.auth_token
        return headers

    async def can_auto_generate(self, capability: str) -> bool:
        """Ask the service whether ``capability`` can be generated.

        API
        ---
        - Method/Path: ``GET /capabilities/{name}/feasibility``

        Returns:
            The ``can_generate`` flag of the response (False when absent).

        Raises:
            GenerationApiError: When the response status is non-2xx or the
                request could not be sent.
        """
        self._ensure_token()
        data = await self._request("GET", f"/capabilities/{quote(capability, safe='')}/feasibility")
        return bool(data.get("can_generate", False))

    async def request_generation(self, capability: str, requirements: CapabilityRequirements) -> None:
        """Submit a generation request.

        API
        ---
        - Method/Path: ``POST /generations``
        - Body: ``{"capability": <name>, "requirements": {...}}``

        Raises:
            GenerationApiError: When the response status is non-2xx or the
                request could not be sent.
        """
        self._ensure_token()
        body = {
            "capability": capability,
            "requirements": requirements.model_dump(mode="json", exclude_none=True),
        }
        data = await self._request("POST", "/generations", json=body)
        self._logger.info("Generation requested for %s (id=%s)", capability, data.get("id"))

    async def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            r = await self._client.request(method, f"{self.base_url}{path}", headers=self._headers(), json=json)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GenerationApiError(
                f"Generation service {method} {path} failed: {e.response.status_code}",
                status_code=e.response.status_code,
                details=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            raise GenerationApiError(f"Generation service {method} {path} failed: {e}") from e
        if not r.content:
            return {}
        try:
            payload = r.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
