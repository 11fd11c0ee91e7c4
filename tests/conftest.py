import json
from typing import Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.services.credential_manager import CredentialManager
from main import create_app


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        GEMINI_API_KEYS=None,
        API_KEYS_FILE=str(tmp_path / "missing.json"),
        UPSTREAM_BASE_URL="https://generativelanguage.googleapis.com",
        PROXY_PREFIX="/v1beta",
        MAX_BODY_SIZE=1024,
    )


class UpstreamRecorder:
    """Records outbound requests and answers them with a configurable handler."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={"ok": True}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self):
        return json.loads(self.last.content)


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()


@pytest.fixture
def make_client(test_settings, upstream):
    clients = []

    def _make(keys=("key-a", "key-b", "key-c")) -> TestClient:
        app = create_app(
            test_settings,
            credential_manager=CredentialManager(list(keys)),
            transport=httpx.MockTransport(upstream),
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
