"""Cloudflare API client - typed access to tunnels, DNS and Access."""

import base64
import logging
import secrets
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from tunnel_provisioner.core.config import Settings
from tunnel_provisioner.schemas.cloudflare import (
    ALL_PATHS,
    TUNNEL_CNAME_SUFFIX,
    DnsRecord,
    IngressRule,
    PublishedRoute,
    Tunnel,
    TunnelConfiguration,
)

logger = logging.getLogger(__name__)

# Live API name of the named-tunnel resource
TUNNEL_RESOURCE = "cfd_tunnel"

# Access policy that admits a single service token
SERVICE_TOKEN_POLICY_NAME = "Service Token Policy"
SERVICE_TOKEN_POLICY_DECISION = "non_identity"

_REDACTED = "<redacted>"

ModelT = TypeVar("ModelT", bound=BaseModel)


class CloudflareError(Exception):
    """Base class for failures talking to the Cloudflare API."""


class TransportError(CloudflareError):
    """Raised when a request fails before any response is received."""


class RemoteApiError(CloudflareError):
    """Raised when Cloudflare answers without ``success`` or without a result."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        raw_body: str = "",
        errors: list | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.raw_body = raw_body
        self.errors = errors or []


class MalformedResponseError(CloudflareError):
    """Raised when a successful response lacks an expected field."""

    def __init__(self, message: str, raw_body: str | None = None):
        super().__init__(message)
        self.raw_body = raw_body


def _loggable(body: dict[str, Any]) -> dict[str, Any]:
    """Copy of a request body safe to write to the log."""
    return {k: (_REDACTED if k == "tunnel_secret" else v) for k, v in body.items()}


def tunnel_cname(tunnel_id: str) -> str:
    """Hostname a DNS record must point at to reach a tunnel."""
    return f"{tunnel_id}.{TUNNEL_CNAME_SUFFIX}"


def decode_result(model: type[ModelT], envelope: dict[str, Any], what: str) -> ModelT:
    """Decode the ``result`` of a successful envelope into a typed model."""
    try:
        return model.model_validate(envelope.get("result"))
    except ValidationError as e:
        raise MalformedResponseError(
            f"Could not decode {what}: {e.error_count()} invalid field(s)",
            raw_body=str(envelope),
        ) from e


def extract_result_id(envelope: dict[str, Any]) -> str:
    """Pull ``result.id`` out of a raw response envelope."""
    result = envelope.get("result")
    resource_id = result.get("id") if isinstance(result, dict) else None
    if not isinstance(resource_id, str) or not resource_id:
        raise MalformedResponseError("Response has no result.id field", raw_body=str(envelope))
    return resource_id


class CloudflareApiClient:
    """Client for the Cloudflare v4 API scoped to one account and zone.

    The client holds the bearer credential and an ``httpx.AsyncClient``. When
    an HTTP client is passed in it is shared and never closed here; otherwise
    one is created on first use and closed by ``aclose()``.

    Every operation either returns a decoded result or raises one of
    ``TransportError``, ``RemoteApiError`` or ``MalformedResponseError``.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self._api_token = settings.cloudflare_api_token
        self._account_id = settings.cloudflare_account_id
        self._zone_id = settings.cloudflare_zone_id
        self._base_url = settings.cloudflare_api_base.rstrip("/")
        self._session_duration = settings.access_session_duration
        self._timeout = settings.http_timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "CloudflareApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _get_headers(self) -> dict[str, str]:
        """Get headers for Cloudflare API requests."""
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

    # =========================================================================
    # Request plumbing
    # =========================================================================

    async def _cf_request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        redact_response: bool = False,
    ) -> dict[str, Any]:
        """Make a request and return the envelope of a successful response."""
        url = f"{self._base_url}/{path.lstrip('/')}"

        context: dict[str, Any] = {"method": method, "url": url}
        logger.info("HTTP %s %s", method, url, extra=context)
        if body is not None:
            logger.debug("HTTP request body: %s", _loggable(body), extra=context)

        try:
            response = await self._get_client().request(
                method,
                url,
                headers=self._get_headers(),
                json=body,
                params=params,
                timeout=self._timeout,
            )
        except httpx.RequestError as e:
            logger.warning(
                "HTTP %s %s failed before a response: %s", method, url, e, extra=context
            )
            raise TransportError(f"{method} {url} failed: {e}") from e

        raw_body = response.text
        context["status_code"] = response.status_code
        logger.info("HTTP %s %s -> %s", method, url, response.status_code, extra=context)
        logger.debug(
            "HTTP response body: %s", _REDACTED if redact_response else raw_body, extra=context
        )

        try:
            data = response.json()
        except ValueError:
            raise RemoteApiError(
                f"Cloudflare API error: HTTP {response.status_code} (non-JSON response)",
                status_code=response.status_code,
                raw_body=raw_body,
            ) from None

        if not isinstance(data, dict):
            raise RemoteApiError(
                f"Cloudflare API error: HTTP {response.status_code} (unexpected body)",
                status_code=response.status_code,
                raw_body=raw_body,
            )

        if data.get("success") is not True or data.get("result") is None:
            errors = data.get("errors") or []
            error_messages = [
                e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors
            ]
            detail = ", ".join(error_messages) or "missing result"
            raise RemoteApiError(
                f"Cloudflare API error: HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
                raw_body=raw_body,
                errors=errors,
            )

        return data

    @staticmethod
    def _ingress_payload(ingress_rules: list[IngressRule]) -> list[dict[str, Any]]:
        return [rule.model_dump(exclude_none=True) for rule in ingress_rules]

    # =========================================================================
    # Tunnels
    # =========================================================================

    async def create_tunnel(self, name: str, ingress_rules: list[IngressRule]) -> Tunnel:
        """Create a remotely-managed named tunnel with an initial ingress set."""
        # Generate a tunnel secret (32 bytes, standard base64 encoded)
        tunnel_secret = base64.b64encode(secrets.token_bytes(32)).decode("utf-8")

        data = await self._cf_request(
            "POST",
            f"accounts/{self._account_id}/{TUNNEL_RESOURCE}",
            body={
                "name": name,
                "tunnel_secret": tunnel_secret,
                "config_src": "cloudflare",
                "config": {"ingress": self._ingress_payload(ingress_rules)},
            },
        )
        return decode_result(Tunnel, data, "tunnel")

    async def get_tunnel_token(self, tunnel_id: str) -> str:
        """Get the connection token a local agent uses to run the tunnel."""
        data = await self._cf_request(
            "GET",
            f"accounts/{self._account_id}/{TUNNEL_RESOURCE}/{tunnel_id}/token",
            redact_response=True,
        )
        token = data["result"]
        if not isinstance(token, str) or not token:
            raise RemoteApiError(
                "Cloudflare API error: empty tunnel token",
                status_code=None,
                raw_body=_REDACTED,
            )
        return token

    async def get_tunnel_configuration(self, tunnel_id: str) -> TunnelConfiguration:
        """Read the current ingress configuration of a tunnel."""
        data = await self._cf_request(
            "GET",
            f"accounts/{self._account_id}/{TUNNEL_RESOURCE}/{tunnel_id}/configurations",
        )
        return decode_result(TunnelConfiguration, data, "tunnel configuration")

    async def update_tunnel_ingress(
        self, tunnel_id: str, ingress_rules: list[IngressRule]
    ) -> TunnelConfiguration:
        """Replace a tunnel's ingress rules."""
        data = await self._cf_request(
            "PUT",
            f"accounts/{self._account_id}/{TUNNEL_RESOURCE}/{tunnel_id}/configurations",
            body={"config": {"ingress": self._ingress_payload(ingress_rules)}},
        )
        return decode_result(TunnelConfiguration, data, "tunnel configuration")

    async def list_published_routes(self, tunnel_id: str) -> list[PublishedRoute]:
        """List the published application routes of a tunnel."""
        data = await self._cf_request(
            "GET",
            f"accounts/{self._account_id}/{TUNNEL_RESOURCE}/routes",
            params={"tunnel_id": tunnel_id},
        )
        routes = data["result"]
        if not isinstance(routes, list):
            raise MalformedResponseError("Route listing is not a list", raw_body=str(data))
        try:
            return [PublishedRoute.model_validate(r) for r in routes]
        except ValidationError as e:
            raise MalformedResponseError(
                f"Could not decode routes: {e.error_count()} invalid field(s)",
                raw_body=str(data),
            ) from e

    async def create_published_route(
        self, tunnel_id: str, hostname: str, service: str, path: str = ALL_PATHS
    ) -> dict[str, Any]:
        """Publish ``hostname``/``path`` on a tunnel; returns the raw envelope."""
        return await self._cf_request(
            "POST",
            f"accounts/{self._account_id}/{TUNNEL_RESOURCE}/{tunnel_id}/configurations",
            body={
                "hostname": hostname,
                "tunnel_id": tunnel_id,
                "path": path,
                "service": service,
            },
        )

    # =========================================================================
    # DNS
    # =========================================================================

    async def list_dns_records(self, name: str | None = None) -> list[DnsRecord]:
        """List CNAME records in the zone, optionally filtered by name."""
        params: dict[str, Any] = {"type": "CNAME"}
        if name:
            params["name"] = name
        data = await self._cf_request("GET", f"zones/{self._zone_id}/dns_records", params=params)
        records = data["result"]
        if not isinstance(records, list):
            raise MalformedResponseError("DNS record listing is not a list", raw_body=str(data))
        try:
            return [DnsRecord.model_validate(r) for r in records]
        except ValidationError as e:
            raise MalformedResponseError(
                f"Could not decode DNS records: {e.error_count()} invalid field(s)",
                raw_body=str(data),
            ) from e

    async def create_dns_record(self, hostname: str, cname_target: str) -> DnsRecord:
        """Create a proxied CNAME record with automatic TTL."""
        data = await self._cf_request(
            "POST",
            f"zones/{self._zone_id}/dns_records",
            body={
                "type": "CNAME",
                "name": hostname,
                "content": cname_target,
                "ttl": 1,  # Auto TTL
                "proxied": True,
            },
        )
        return decode_result(DnsRecord, data, "DNS record")

    # =========================================================================
    # Access
    # =========================================================================

    async def create_access_application(self, name: str, domain: str) -> dict[str, Any]:
        """Create a self-hosted Access application; returns the raw envelope."""
        return await self._cf_request(
            "POST",
            f"accounts/{self._account_id}/access/apps",
            body={
                "name": name,
                "domain": domain,
                "type": "self_hosted",
                "session_duration": self._session_duration,
            },
        )

    async def create_access_policy(
        self, application_id: str, service_token_id: str
    ) -> dict[str, Any]:
        """Create a policy admitting one service token; returns the raw envelope."""
        return await self._cf_request(
            "POST",
            f"accounts/{self._account_id}/access/apps/{application_id}/policies",
            body={
                "name": SERVICE_TOKEN_POLICY_NAME,
                "precedence": 1,
                "decision": SERVICE_TOKEN_POLICY_DECISION,
                "include": [{"service_token": {"token_id": service_token_id}}],
            },
        )

    async def get_access_application(self, application_id: str) -> dict[str, Any]:
        """Fetch an Access application; returns the raw envelope."""
        return await self._cf_request(
            "GET",
            f"accounts/{self._account_id}/access/apps/{application_id}",
        )
