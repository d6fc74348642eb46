"""Shared fixtures: an isolated data dir and a fake management API."""

import json
import os
import tempfile
from urllib.parse import parse_qs

_TEST_DATA_DIR = tempfile.mkdtemp(prefix="keypolicy-test-")
os.environ.setdefault("KEYPOLICY_DATA_DIR", _TEST_DATA_DIR)
os.environ.setdefault(
    "KEYPOLICY_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DATA_DIR}/test.db"
)

import httpx
import pytest

from services.api_key_policies import ApiKeyPoliciesApi, ApiKeysApi, ModelDefinitionsApi
from services.management_api import ManagementApiClient, ManagementConnection

BASE_URL = "http://mgmt.test/v0/management"
MANAGEMENT_KEY = "mgmt-secret"


class FakeManagementApi:
    """In-memory stand-in for the proxy's management API."""

    def __init__(self):
        self.api_keys: list = ["sk-alpha-0001", "sk-bravo-0002"]
        self.policies: list = []
        self.models = {
            "claude": [
                {"id": "claude-opus-4-6", "display_name": "Claude Opus 4.6"},
                {"id": "claude-sonnet-4-5", "display_name": "Claude Sonnet 4.5"},
            ],
            "codex": [{"id": "gpt-5.2(high)"}, {"id": "gpt-5.2-codex"}],
        }
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("authorization") != f"Bearer {MANAGEMENT_KEY}":
            return httpx.Response(401, json={"error": "invalid management key"})
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": "backend exploded"})

        path = request.url.path.removeprefix("/v0/management")
        body = json.loads(request.content) if request.content else None

        if path == "/api-keys" and request.method == "GET":
            return httpx.Response(200, json={"api-keys": self.api_keys})

        if path.startswith("/model-definitions/") and request.method == "GET":
            channel = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"channel": channel, "models": self.models.get(channel, [])})

        if path == "/api-key-policies":
            if request.method == "GET":
                return httpx.Response(200, json={"api-key-policies": self.policies})
            if request.method == "PUT":
                self.policies = list(body)
                return httpx.Response(200, json={"status": "ok"})
            if request.method == "PATCH":
                key = body["api-key"]
                self.policies = [p for p in self.policies if p.get("api-key") != key]
                self.policies.append(body["value"])
                return httpx.Response(200, json={"status": "ok"})
            if request.method == "DELETE":
                key = parse_qs(request.url.query.decode())["api-key"][0]
                self.policies = [p for p in self.policies if p.get("api-key") != key]
                return httpx.Response(200, json={"status": "ok"})

        return httpx.Response(404, json={"error": "not found"})

    def calls(self, method: str | None = None) -> list[httpx.Request]:
        return [r for r in self.requests if method is None or r.method == method]


@pytest.fixture
def fake_api() -> FakeManagementApi:
    return FakeManagementApi()


@pytest.fixture
def connection() -> ManagementConnection:
    return ManagementConnection(base_url=BASE_URL, management_key=MANAGEMENT_KEY)


@pytest.fixture
def mgmt_client(fake_api, connection) -> ManagementApiClient:
    return ManagementApiClient(connection=connection, transport=httpx.MockTransport(fake_api.handler))


@pytest.fixture
def policies_api(mgmt_client) -> ApiKeyPoliciesApi:
    return ApiKeyPoliciesApi(mgmt_client)


@pytest.fixture
def keys_api(mgmt_client) -> ApiKeysApi:
    return ApiKeysApi(mgmt_client)


@pytest.fixture
def models_api(mgmt_client) -> ModelDefinitionsApi:
    return ModelDefinitionsApi(mgmt_client)
