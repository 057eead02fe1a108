"""Shared fixtures for the central API test suite."""

import base64
import json

import httpx
import pytest

from central_api.config.settings import Settings, get_settings
from central_api.logging.audit import get_audit_logger
from central_api.main import create_app
from central_api.registry.models import ClientRecord
from central_api.registry.registry import ClientRegistry


@pytest.fixture
def sample_record() -> ClientRecord:
    """A typical registered client."""
    return ClientRecord(
        id="c1",
        api_url="http://localhost:9000",
        username="u",
        password="p",
    )


@pytest.fixture
def registry() -> ClientRegistry:
    """Isolated in-memory registry."""
    return ClientRegistry()


@pytest.fixture
def clients_json_file(tmp_path):
    """Create a temp persisted registry file and return its path."""
    data = {
        "client-a": {
            "id": "client-a",
            "api_url": "https://a.example.com/api/",
            "username": "alice",
            "password": "secret-a",
        },
        "client-b": {
            "id": "client-b",
            "api_url": "http://b.example.com",
            "username": "",
            "password": "",
        },
    }
    path = tmp_path / "clients.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


@pytest.fixture
def override_settings(monkeypatch):
    """Factory fixture: set env vars and clear settings cache.

    Usage:
        override_settings(API_KEY="secret", PERSISTENCE_FILE="")
    """
    def _override(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        # Clear lru_cache so Settings re-reads env
        get_settings.cache_clear()

    yield _override

    get_settings.cache_clear()


class ChunkedStream(httpx.AsyncByteStream):
    """Upstream body delivered in separate chunks, optionally failing midway."""

    def __init__(self, chunks: list[bytes], error: Exception | None = None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


class UpstreamStub:
    """Records outbound relay requests and answers through a handler."""

    def __init__(self, handler=None):
        self.requests: list[httpx.Request] = []
        self._handler = handler or (lambda request: httpx.Response(200, text="ok"))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._handler(request)
        if isinstance(response.stream, httpx.ByteStream):
            # Response(content=...) is read on creation; hand the relay an
            # unread stream, as a network transport would.
            response = httpx.Response(
                response.status_code,
                headers=response.headers,
                stream=httpx.ByteStream(response.content),
            )
        return response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def make_app_client(registry, upstream):
    """Factory fixture: httpx AsyncClient wired to a fresh app.

    Persistence is disabled and the relay talks to `upstream`.
    """
    def _make(**settings_kwargs) -> httpx.AsyncClient:
        settings = Settings(persistence_file="", **settings_kwargs)
        app = create_app(settings=settings, registry=registry, http_client=upstream.client())
        transport = httpx.ASGITransport(app=app)
        return httpx.AsyncClient(transport=transport, base_url="http://test")

    return _make


@pytest.fixture
def app_client(make_app_client):
    """App client with the registration gate disabled."""
    return make_app_client(api_key="")


def basic_auth(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {token}"


@pytest.fixture
def restore_audit_logger():
    """Put the audit logger's handlers and flags back after a test."""
    logger = get_audit_logger()
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
