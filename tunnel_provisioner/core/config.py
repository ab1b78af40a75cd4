"""Tunnel Provisioner configuration.

Settings are read from the environment (or a local ``.env`` file) and passed
explicitly to every component that needs them. Nothing in the package reads
configuration from module-level state.
"""

import re
from enum import StrEnum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# A serial becomes the first label of the tenant hostname
_DNS_LABEL_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


class EnforcementMode(StrEnum):
    """How a request gate treats requests that fail its check."""

    DISABLED = "disabled"  # gate does nothing
    PERMISSIVE = "permissive"  # check and log, never reject
    ENFORCED = "enforced"  # reject failing requests


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cloudflare control plane
    cloudflare_api_token: str = Field(..., min_length=1)
    cloudflare_account_id: str = Field(..., min_length=1)
    cloudflare_zone_id: str = Field(..., min_length=1)
    cloudflare_api_base: str = "https://api.cloudflare.com/client/v4"
    http_timeout_seconds: float = 30.0

    # Provisioning defaults
    domain: str = Field(..., min_length=1, description="Zone domain tenants live under")
    default_service_address: str = "http://localhost:5581"
    # Ingress target written at tunnel creation, before the real address is set
    placeholder_service_address: str | None = "http://127.0.0.1:5580"
    service_token_id: str | None = None
    access_session_duration: str = "24h"

    # Cloudflare Access assertion verification
    access_team_name: str | None = None
    access_domain: str = "cloudflareaccess.com"
    access_aud: str | None = None
    jwks_cache_ttl_seconds: int = 600
    jwt_leeway_seconds: int = 0
    access_enforcement: EnforcementMode = EnforcementMode.ENFORCED

    # Tenant isolation
    local_serial: str | None = None
    tenant_enforcement: EnforcementMode = EnforcementMode.DISABLED

    # Local agent
    cloudflared_path: str = "cloudflared"

    # Logging
    log_level: str = "INFO"
    log_format: str = "dev"

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        return v.strip().strip(".").lower()

    @field_validator("jwks_cache_ttl_seconds")
    @classmethod
    def validate_cache_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("jwks_cache_ttl_seconds must be positive")
        return v

    @field_validator("local_serial")
    @classmethod
    def validate_local_serial(cls, v: str | None) -> str | None:
        if v is not None and not _DNS_LABEL_RE.match(v):
            raise ValueError("local_serial must be a valid DNS label")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("dev", "structured"):
            raise ValueError("log_format must be 'dev' or 'structured'")
        return v

    @property
    def access_issuer(self) -> str | None:
        """Issuer expected in Cloudflare Access assertions."""
        if not self.access_team_name:
            return None
        return f"https://{self.access_team_name}.{self.access_domain}"

    @property
    def access_certs_url(self) -> str | None:
        """JWKS endpoint publishing the Access signing keys."""
        if not self.access_team_name:
            return None
        return f"https://{self.access_team_name}.{self.access_domain}/cdn-cgi/access/certs"


def is_valid_serial(serial: str) -> bool:
    """Check that a tenant serial is usable as a DNS label."""
    return bool(_DNS_LABEL_RE.match(serial))


@lru_cache
def get_settings() -> Settings:
    """Load settings from the environment once per process."""
    return Settings()  # type: ignore[call-arg]
