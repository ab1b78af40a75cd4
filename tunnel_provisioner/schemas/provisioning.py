"""Pydantic schemas for provisioning results and the enrollment API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from tunnel_provisioner.core.config import is_valid_serial
from tunnel_provisioner.schemas.cloudflare import (
    AccessApplication,
    AccessPolicy,
    DnsRecord,
    TunnelConfiguration,
)


class ProvisioningRecord(BaseModel):
    """Everything created for one tenant by a successful provisioning run."""

    serial: str
    hostname: str
    tunnel_id: str
    tunnel_token: str
    dns_record: DnsRecord
    tunnel_config: TunnelConfiguration
    access_application: AccessApplication
    access_policy: AccessPolicy
    created_at: datetime
    is_active: bool = True


class EnrollmentRequest(BaseModel):
    """Request to provision a tenant device."""

    serial: str = Field(..., min_length=1, max_length=63)
    service_address: str | None = Field(
        default=None,
        description="Origin the tunnel routes to; defaults to the configured address",
    )
    service_token_id: str | None = Field(
        default=None,
        description="Access service token allowed through the policy",
    )

    @field_validator("serial")
    @classmethod
    def validate_serial(cls, v: str) -> str:
        if not is_valid_serial(v):
            raise ValueError(
                "Serial must start and end with a letter or digit and contain "
                "only alphanumeric characters and hyphens"
            )
        return v


class EnrollmentResponse(BaseModel):
    """Response from a provisioning run."""

    success: bool
    serial: str
    hostname: str | None = None
    tunnel_id: str | None = None
    tunnel_token: str | None = None
    failed_step: str | None = None
    error: str | None = None


class ProvisioningStatusResponse(BaseModel):
    """Summary of the provisioner's configuration."""

    domain: str
    access_enforcement: str
    tenant_enforcement: str
    local_serial: str | None = None
    service_token_configured: bool
    access_verification_configured: bool
