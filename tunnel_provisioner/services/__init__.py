# Tunnel Provisioner Services
from tunnel_provisioner.services.access_jwt import (
    AccessTokenValidator,
    SigningKeySet,
    TokenValidationError,
)
from tunnel_provisioner.services.cloudflare_api import (
    CloudflareApiClient,
    CloudflareError,
    MalformedResponseError,
    RemoteApiError,
    TransportError,
    tunnel_cname,
)
from tunnel_provisioner.services.provisioning import (
    ProvisioningAbortedError,
    ProvisioningCancelledError,
    ProvisioningOrchestrator,
    ProvisioningStep,
    build_ingress_rules,
)
from tunnel_provisioner.services.tunnel_agent import (
    CloudflaredAgent,
    TunnelAgent,
    TunnelAgentError,
)

__all__ = [
    "AccessTokenValidator",
    "CloudflareApiClient",
    "CloudflareError",
    "CloudflaredAgent",
    "MalformedResponseError",
    "ProvisioningAbortedError",
    "ProvisioningCancelledError",
    "ProvisioningOrchestrator",
    "ProvisioningStep",
    "RemoteApiError",
    "SigningKeySet",
    "TokenValidationError",
    "TransportError",
    "TunnelAgent",
    "TunnelAgentError",
    "build_ingress_rules",
    "tunnel_cname",
]
