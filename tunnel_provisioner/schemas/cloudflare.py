"""Pydantic schemas for Cloudflare control-plane objects."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Service of the rule that must close every ingress list
CATCH_ALL_SERVICE = "http_status:404"

# Suffix of the hostname a tunnel is reachable at
TUNNEL_CNAME_SUFFIX = "cfargotunnel.com"


# =============================================================================
# Tunnels
# =============================================================================


class IngressRule(BaseModel):
    """A hostname-to-service route inside a tunnel configuration."""

    model_config = ConfigDict(extra="ignore")

    hostname: str | None = None
    service: str

    @property
    def is_catch_all(self) -> bool:
        return self.hostname is None and self.service == CATCH_ALL_SERVICE


class TunnelIngressConfig(BaseModel):
    """The ``config`` block of a remotely-managed tunnel."""

    model_config = ConfigDict(extra="ignore")

    ingress: list[IngressRule] = Field(default_factory=list)


class Tunnel(BaseModel):
    """A Cloudflare named tunnel."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    name: str
    created_at: datetime | None = None
    ingress_rules: list[IngressRule] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def lift_ingress(cls, data: Any) -> Any:
        """Read ingress rules from the nested ``config.ingress`` block."""
        if isinstance(data, dict) and "ingress_rules" not in data:
            config = data.get("config")
            if isinstance(config, dict) and isinstance(config.get("ingress"), list):
                data = {**data, "ingress_rules": config["ingress"]}
        return data


class TunnelConfiguration(BaseModel):
    """Result of reading or replacing a tunnel's configuration."""

    model_config = ConfigDict(extra="ignore")

    tunnel_id: str | None = None
    version: int = 0
    config: TunnelIngressConfig = Field(default_factory=TunnelIngressConfig)
    source: str | None = None
    created_at: datetime | None = None


# Path pattern matching every request to a hostname
ALL_PATHS = "*"


class PublishedRoute(BaseModel):
    """A published application route: hostname and path served by a tunnel."""

    model_config = ConfigDict(extra="ignore")

    hostname: str
    service: str | None = None
    path: str = ALL_PATHS
    tunnel_id: str | None = None


# =============================================================================
# DNS
# =============================================================================


class DnsRecord(BaseModel):
    """A DNS record in the configured zone."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = "CNAME"
    name: str
    content: str
    ttl: int = 1
    proxied: bool = True


# =============================================================================
# Access
# =============================================================================


class AccessApplication(BaseModel):
    """A self-hosted Cloudflare Access application."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    name: str
    domain: str
    type: str = "self_hosted"
    session_duration: str = "24h"


class AccessPolicy(BaseModel):
    """An Access policy attached to an application."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str
    precedence: int = 1
    decision: str
    include: list[dict[str, Any]] = Field(default_factory=list)
