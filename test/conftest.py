from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable

import httpx
import pytest

# Load dotenv files early so settings fixtures can read overrides via os.getenv
try:  # pragma: no cover
    from dotenv import load_dotenv

    TEST_ROOT = Path(__file__).resolve().parent
    # Load test/.env first, then fallback to test/.env.example for defaults
    load_dotenv(TEST_ROOT / ".env", override=False)
    load_dotenv(TEST_ROOT / ".env.example", override=False)
except Exception:
    pass

from capmesh.core.config import Settings
from capmesh.linker.repos.memory import InMemoryMetadataStore
from capmesh.linker.resolver import CapabilityResolver
from capmesh.linker.schemas.domain import ProviderRecord


class FakeClock:
    """Monotonic clock stand-in; advance it explicitly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with short timers so background work finishes quickly in tests."""
    return Settings(
        default_algorithm="weighted_performance",
        default_min_performance=None,
        store_timeout_seconds=0.5,
        store_retry_backoff_seconds=0.0,
        health_retry_interval_seconds=0.01,
        enable_file_logging=False,
    )


@pytest.fixture
def store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def make_provider() -> Callable[..., ProviderRecord]:
    def _make(capability: str = "send_message", path: str = "providers/p1.py", **fields: Any) -> ProviderRecord:
        return ProviderRecord(capability_name=capability, provider_files=[path], **fields)

    return _make


@pytest.fixture
def resolver(store: InMemoryMetadataStore, test_settings: Settings):
    return CapabilityResolver(store, settings=test_settings)


@pytest.fixture(autouse=True)
def _global_offline_http_guard(monkeypatch: pytest.MonkeyPatch):
    allowed_prefixes: Iterable[str] = (
        "http://mock",
        "https://mock",
        "http://localhost",
        "http://127.0.0.1",
        "http://0.0.0.0",
        "/",  # Allow relative paths (used by ASGI transport)
    )

    orig_sync = httpx._client.Client.request
    orig_async = httpx._client.AsyncClient.request

    def _is_allowed(url_str: str) -> bool:
        return any(url_str.startswith(p) for p in allowed_prefixes)

    def offline_sync(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return orig_sync(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard: {url_str}")

    async def offline_async(self, method, url, *args, **kwargs):
        url_str = str(url)
        if _is_allowed(url_str):
            return await orig_async(self, method, url, *args, **kwargs)
        raise RuntimeError(f"External HTTP blocked by global offline guard (async): {url_str}")

    monkeypatch.setattr(httpx._client.Client, "request", offline_sync, raising=True)
    monkeypatch.setattr(httpx._client.AsyncClient, "request", offline_async, raising=True)
