from __future__ import annotations

import json

import httpx
import pytest

from capmesh.linker.errors import GenerationApiError
from capmesh.linker.generation import HttpGenerationClient, NullGenerationOracle
from capmesh.linker.schemas.domain import CapabilityRequirements


def _client(handler) -> HttpGenerationClient:
    transport = httpx.MockTransport(handler)
    return HttpGenerationClient(
        "http://mock/",
        auth_token="Bearer t0k",
        client=httpx.AsyncClient(transport=transport),
    )


@pytest.mark.asyncio
async def test_null_oracle_never_generates() -> None:
    oracle = NullGenerationOracle()
    assert await oracle.can_auto_generate("summon_dragon") is False
    assert await oracle.request_generation("summon_dragon", CapabilityRequirements()) is None


@pytest.mark.asyncio
async def test_can_auto_generate_reads_feasibility() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"can_generate": True, "estimate_seconds": 30})

    client = _client(handler)
    assert await client.can_auto_generate("summon_dragon") is True
    assert seen == {"method": "GET", "path": "/capabilities/summon_dragon/feasibility", "auth": "Bearer t0k"}


@pytest.mark.asyncio
async def test_missing_flag_means_cannot_generate() -> None:
    client = _client(lambda request: httpx.Response(200, json={}))
    assert await client.can_auto_generate("x") is False


@pytest.mark.asyncio
async def test_request_generation_posts_requirements() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append((request.url.path, json.loads(request.content)))
        return httpx.Response(202, json={"id": "gen-1"})

    client = _client(handler)
    await client.request_generation("summon_dragon", CapabilityRequirements(min_performance=0.5))

    path, body = bodies[0]
    assert path == "/generations"
    assert body["capability"] == "summon_dragon"
    assert body["requirements"]["min_performance"] == 0.5


@pytest.mark.asyncio
async def test_http_error_raises_generation_api_error() -> None:
    client = _client(lambda request: httpx.Response(503, text="busy"))

    with pytest.raises(GenerationApiError) as excinfo:
        await client.can_auto_generate("summon_dragon")

    assert excinfo.value.status_code == 503
    assert excinfo.value.details == "busy"


@pytest.mark.asyncio
async def test_transport_error_raises_generation_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GenerationApiError):
        await _client(handler).request_generation("x", CapabilityRequirements())


@pytest.mark.asyncio
async def test_token_provider_is_used() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"can_generate": False})

    client = HttpGenerationClient(
        "http://mock",
        token_provider=lambda: "Bearer fresh",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    await client.can_auto_generate("x")
    assert seen == ["Bearer fresh"]


@pytest.mark.asyncio
async def test_aclose_closes_owned_client() -> None:
    client = HttpGenerationClient("http://mock")
    await client.aclose()
    assert client._client.is_closed


@pytest.mark.asyncio
async def test_capability_name_is_encoded_as_one_path_segment() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.raw_path)
        return httpx.Response(200, json={"can_generate": False})

    client = _client(handler)
    assert await client.can_auto_generate("billing/invoice v2") is False
    assert seen == [b"/capabilities/billing%2Finvoice%20v2/feasibility"]
