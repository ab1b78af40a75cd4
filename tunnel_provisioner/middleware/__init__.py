"""Request gates for the tunnel provisioner API."""

from tunnel_provisioner.middleware.access_gate import CloudflareAccessMiddleware
from tunnel_provisioner.middleware.tenant_serial import TenantSerialMiddleware

__all__ = [
    "CloudflareAccessMiddleware",
    "TenantSerialMiddleware",
]
