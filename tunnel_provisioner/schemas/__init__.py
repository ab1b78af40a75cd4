# Tunnel Provisioner Schemas
from tunnel_provisioner.schemas.cloudflare import (
    ALL_PATHS,
    CATCH_ALL_SERVICE,
    TUNNEL_CNAME_SUFFIX,
    AccessApplication,
    AccessPolicy,
    DnsRecord,
    IngressRule,
    PublishedRoute,
    Tunnel,
    TunnelConfiguration,
    TunnelIngressConfig,
)
from tunnel_provisioner.schemas.provisioning import (
    EnrollmentRequest,
    EnrollmentResponse,
    ProvisioningRecord,
    ProvisioningStatusResponse,
)

__all__ = [
    "ALL_PATHS",
    "CATCH_ALL_SERVICE",
    "TUNNEL_CNAME_SUFFIX",
    "AccessApplication",
    "AccessPolicy",
    "DnsRecord",
    "EnrollmentRequest",
    "EnrollmentResponse",
    "IngressRule",
    "PublishedRoute",
    "ProvisioningRecord",
    "ProvisioningStatusResponse",
    "Tunnel",
    "TunnelConfiguration",
    "TunnelIngressConfig",
]
