"""Pytest configuration and fixtures for tunnel provisioner tests.

Cloudflare is replaced by ``FakeCloudflareApi``, an in-memory fake served
through ``httpx.MockTransport``. It records every call so tests can assert on
the exact order of remote operations and inject failures at any of them.
"""

import json
import logging
import re
from collections.abc import AsyncGenerator, Callable
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from tunnel_provisioner.core.config import Settings
from tunnel_provisioner.services.cloudflare_api import CloudflareApiClient
from tunnel_provisioner.services.provisioning import ProvisioningOrchestrator

TEST_ACCOUNT_ID = "acct123"
TEST_ZONE_ID = "zone123"
TEST_DOMAIN = "example.com"
TEST_SERVICE_TOKEN_ID = "svc-token-0001"
TEST_API_TOKEN = "cf-test-api-token"

API_PREFIX = "/client/v4/"

# (route name, method, path pattern); first match wins
_ROUTES: list[tuple[str, str, re.Pattern[str]]] = [
    ("create_tunnel", "POST", re.compile(r"^accounts/[^/]+/cfd_tunnel$")),
    ("get_token", "GET", re.compile(r"^accounts/[^/]+/cfd_tunnel/(?P<id>[^/]+)/token$")),
    ("list_routes", "GET", re.compile(r"^accounts/[^/]+/cfd_tunnel/routes$")),
    ("get_config", "GET", re.compile(r"^accounts/[^/]+/cfd_tunnel/(?P<id>[^/]+)/configurations$")),
    ("update_ingress", "PUT", re.compile(r"^accounts/[^/]+/cfd_tunnel/(?P<id>[^/]+)/configurations$")),
    ("create_route", "POST", re.compile(r"^accounts/[^/]+/cfd_tunnel/(?P<id>[^/]+)/configurations$")),
    ("list_dns", "GET", re.compile(r"^zones/[^/]+/dns_records$")),
    ("create_dns", "POST", re.compile(r"^zones/[^/]+/dns_records$")),
    ("create_app", "POST", re.compile(r"^accounts/[^/]+/access/apps$")),
    ("create_policy", "POST", re.compile(r"^accounts/[^/]+/access/apps/(?P<id>[^/]+)/policies$")),
    ("get_app", "GET", re.compile(r"^accounts/[^/]+/access/apps/(?P<id>[^/]+)$")),
]


def envelope(result: Any, success: bool = True, errors: list | None = None) -> dict:
    return {"success": success, "errors": errors or [], "messages": [], "result": result}


class FakeCloudflareApi:
    """In-memory stand-in for the Cloudflare v4 API."""

    def __init__(self):
        self.calls: list[tuple[str, str, dict | None]] = []
        self.requests: list[httpx.Request] = []
        self.failures: dict[str, httpx.Response | Exception] = {}
        self.overrides: dict[str, dict] = {}
        self.on_call: Callable[[str], None] | None = None
        self.tunnels: dict[str, dict] = {}
        self.dns_records: list[dict] = []
        self.apps: dict[str, dict] = {}
        self.routes: list[dict] = []
        self._counter = 0

    # --- test controls ---

    def fail(
        self,
        route: str,
        status_code: int = 400,
        errors: list | None = None,
        exc: Exception | None = None,
    ) -> None:
        """Make ``route`` fail with an error envelope or a transport exception."""
        if exc is not None:
            self.failures[route] = exc
        else:
            self.failures[route] = httpx.Response(
                status_code,
                json=envelope(
                    None,
                    success=False,
                    errors=errors or [{"code": 1000, "message": f"{route} failed"}],
                ),
            )

    def respond(self, route: str, body: dict) -> None:
        """Return ``body`` verbatim for ``route``."""
        self.overrides[route] = body

    def routes_called(self) -> list[str]:
        return [self._match(method, path)[0] for method, path, _ in self.calls]

    def body_of(self, route: str) -> dict | None:
        for method, path, body in self.calls:
            if self._match(method, path)[0] == route:
                return body
        return None

    # --- transport ---

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter:04d}"

    @staticmethod
    def _match(method: str, path: str) -> tuple[str, dict[str, str]]:
        for name, route_method, pattern in _ROUTES:
            match = pattern.match(path)
            if route_method == method and match:
                return name, match.groupdict()
        raise AssertionError(f"Unexpected Cloudflare call: {method} {path}")

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix(API_PREFIX)
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))
        self.requests.append(request)

        route, path_params = self._match(request.method, path)
        params = {**dict(request.url.params), **path_params}
        if self.on_call is not None:
            self.on_call(route)

        failure = self.failures.get(route)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return failure
        if route in self.overrides:
            return httpx.Response(200, json=self.overrides[route])

        return httpx.Response(200, json=envelope(self._result(route, params, body)))

    def _result(self, route: str, params: dict[str, str], body: dict | None) -> Any:
        if route == "create_tunnel":
            tunnel_id = self._next_id("tunnel")
            tunnel = {
                "id": tunnel_id,
                "name": body["name"],
                "created_at": "2026-01-01T00:00:00Z",
                "config": body.get("config"),
            }
            self.tunnels[tunnel_id] = tunnel
            return tunnel
        if route == "get_token":
            return f"token-for-{params['id']}"
        if route in ("get_config", "update_ingress"):
            config = body["config"] if body else self.tunnels[params["id"]]["config"]
            return {
                "tunnel_id": params["id"],
                "version": 1,
                "config": config,
                "source": "cloudflare",
                "created_at": "2026-01-01T00:00:00Z",
            }
        if route == "list_routes":
            return [r for r in self.routes if r["tunnel_id"] == params["tunnel_id"]]
        if route == "create_route":
            self.routes.append(body)
            return body
        if route == "list_dns":
            return self.dns_records
        if route == "create_dns":
            record = {"id": self._next_id("dns"), **body}
            self.dns_records.append(record)
            return record
        if route == "create_app":
            app = {"id": self._next_id("app"), **body}
            self.apps[app["id"]] = app
            return app
        if route == "create_policy":
            return {"id": self._next_id("policy"), **body}
        if route == "get_app":
            return self.apps[params["id"]]
        raise AssertionError(f"No result for route {route}")


# --- Settings ---


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "cloudflare_api_token": TEST_API_TOKEN,
        "cloudflare_account_id": TEST_ACCOUNT_ID,
        "cloudflare_zone_id": TEST_ZONE_ID,
        "domain": TEST_DOMAIN,
        "service_token_id": TEST_SERVICE_TOKEN_ID,
        "access_team_name": "myteam",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def restore_root_logger():
    """Undo handler and level changes made by setup_logging."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    libraries = {
        name: logging.getLogger(name).level
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore")
    }
    yield
    root.handlers = handlers
    root.setLevel(level)
    for name, library_level in libraries.items():
        logging.getLogger(name).setLevel(library_level)


# --- Cloudflare fakes ---


@pytest.fixture
def fake_cloudflare() -> FakeCloudflareApi:
    return FakeCloudflareApi()


@pytest_asyncio.fixture
async def http_client(fake_cloudflare) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_cloudflare.handler)) as client:
        yield client


@pytest.fixture
def cf_client(settings, http_client) -> CloudflareApiClient:
    return CloudflareApiClient(settings, http_client=http_client)


@pytest.fixture
def agent() -> AsyncMock:
    """Tunnel agent double; ``agent.bind`` records the binding."""
    mock_agent = AsyncMock()
    mock_agent.bind = AsyncMock(return_value=None)
    return mock_agent


@pytest.fixture
def orchestrator(cf_client, agent, settings) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(cf_client, agent, settings)
