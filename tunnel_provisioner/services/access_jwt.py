"""Cloudflare Access assertion verification with a cached signing key set.

Cloudflare Access signs the ``Cf-Access-Jwt-Assertion`` header with keys
published at ``https://<team>.cloudflareaccess.com/cdn-cgi/access/certs``.
The key set is fetched lazily and kept for a fixed interval. A single lock
covers the freshness check, the fetch and the swap, so concurrent validators
never trigger duplicate refreshes and always see one whole key set.

When a refresh fails the previous key set (even if expired) stays in use and
its expiry is left alone, so the next validation retries the fetch. With no
previous key set every validation is rejected.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import jwt
from jwt import PyJWK
from jwt.exceptions import InvalidSignatureError, PyJWTError

from tunnel_provisioner.core.config import Settings

logger = logging.getLogger(__name__)

ASSERTION_HEADER = "Cf-Access-Jwt-Assertion"


class KeyFetchError(Exception):
    """Raised internally when the signing key set cannot be retrieved."""


class TokenValidationError(Exception):
    """Raised when an assertion fails signature, issuer, audience or expiry checks."""


@dataclass(frozen=True)
class SigningKeySet:
    """An immutable snapshot of the published signing keys."""

    keys: tuple[PyJWK, ...]
    expires_at: float


def _stringify_claims(payload: dict[str, Any]) -> dict[str, str]:
    return {
        name: value if isinstance(value, str) else json.dumps(value)
        for name, value in payload.items()
    }


class AccessTokenValidator:
    """Validates Cloudflare Access assertions against the team's JWKS.

    Audience is checked only when ``access_aud`` is configured; without it
    any audience is accepted.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._certs_url = settings.access_certs_url
        self._issuer = settings.access_issuer
        self._audience = settings.access_aud or None
        self._cache_ttl = settings.jwks_cache_ttl_seconds
        self._leeway = settings.jwt_leeway_seconds
        self._timeout = settings.http_timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._key_set: SigningKeySet | None = None
        self._lock = asyncio.Lock()

    @property
    def is_configured(self) -> bool:
        return self._certs_url is not None

    @property
    def key_set(self) -> SigningKeySet | None:
        """Current cached key set, if any."""
        return self._key_set

    def invalidate(self) -> None:
        """Drop the cached key set so the next validation refetches it."""
        self._key_set = None

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    # ------------------------------------------------------------------
    # Key set
    # ------------------------------------------------------------------

    async def _fetch_keys(self) -> tuple[PyJWK, ...]:
        """Fetch and parse the published key set; bad entries are skipped."""
        if not self._certs_url:
            raise KeyFetchError("Access team name is not configured")

        try:
            response = await self._get_client().get(self._certs_url, timeout=self._timeout)
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPError as e:
            raise KeyFetchError(f"JWKS fetch failed: {e}") from e
        except ValueError as e:
            raise KeyFetchError("JWKS response is not JSON") from e

        entries = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(entries, list):
            raise KeyFetchError("JWKS response has no keys array")

        keys: list[PyJWK] = []
        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning("Skipping non-object JWKS entry")
                continue
            try:
                keys.append(PyJWK.from_dict(entry))
            except (PyJWTError, ValueError, TypeError, KeyError) as e:
                logger.warning("Skipping unusable JWKS key kid=%s: %s", entry.get("kid"), e)
        return tuple(keys)

    async def get_signing_keys(self) -> tuple[PyJWK, ...]:
        """Return the current keys, refreshing them when the cache is stale."""
        async with self._lock:
            cached = self._key_set
            if cached is not None and self._clock() < cached.expires_at:
                return cached.keys

            try:
                keys = await self._fetch_keys()
            except KeyFetchError as e:
                if cached is not None:
                    logger.warning(f"{e}; using {len(cached.keys)} previously cached key(s)")
                    return cached.keys
                logger.warning(f"{e}; no cached keys, rejecting assertions")
                return ()

            self._key_set = SigningKeySet(keys=keys, expires_at=self._clock() + self._cache_ttl)
            logger.info(f"Loaded {len(keys)} Access signing key(s)")
            return keys

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, token: str | None) -> dict[str, str]:
        """Verify an assertion and return its claims as strings.

        Raises:
            TokenValidationError: If the assertion is not acceptable
        """
        if not token:
            raise TokenValidationError("Missing assertion")
        if not self._issuer:
            raise TokenValidationError("Access verification is not configured")

        keys = await self.get_signing_keys()
        if not keys:
            raise TokenValidationError("No signing keys available")

        try:
            header = jwt.get_unverified_header(token)
        except PyJWTError as e:
            raise TokenValidationError(f"Malformed assertion: {e}") from e

        kid = header.get("kid")
        candidates = [k for k in keys if k.key_id == kid] if kid else list(keys)
        if not candidates:
            raise TokenValidationError(f"No signing key matches kid={kid}")

        signature_error: PyJWTError | None = None
        for signing_key in candidates:
            try:
                payload = jwt.decode(
                    token,
                    signing_key.key,
                    algorithms=[signing_key.algorithm_name],
                    issuer=self._issuer,
                    audience=self._audience,
                    leeway=self._leeway,
                    options={
                        "require": ["exp", "iss"],
                        "verify_aud": self._audience is not None,
                    },
                )
            except InvalidSignatureError as e:
                signature_error = e
                continue
            except PyJWTError as e:
                raise TokenValidationError(f"Assertion rejected: {e}") from e
            return _stringify_claims(payload)

        raise TokenValidationError(f"Assertion rejected: {signature_error}")

    async def validate(self, token: str | None) -> tuple[bool, dict[str, str] | None]:
        """Check an assertion without raising.

        Returns ``(True, claims)`` for an acceptable assertion, otherwise
        ``(False, None)``.
        """
        try:
            claims = await self.verify(token)
        except TokenValidationError as e:
            logger.warning(f"Access assertion rejected: {e}")
            return False, None
        return True, claims
