"""Provisioning API endpoints - enroll tenant devices and report status."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from tunnel_provisioner.core.config import Settings
from tunnel_provisioner.schemas.provisioning import (
    EnrollmentRequest,
    EnrollmentResponse,
    ProvisioningStatusResponse,
)
from tunnel_provisioner.services.provisioning import (
    ProvisioningAbortedError,
    ProvisioningOrchestrator,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/provisioning", tags=["provisioning"])
health_router = APIRouter(tags=["health"])


def get_orchestrator(request: Request) -> ProvisioningOrchestrator:
    return request.app.state.orchestrator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


@health_router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post(
    "/enroll",
    response_model=EnrollmentResponse,
    responses={502: {"model": EnrollmentResponse}},
)
async def enroll(
    body: EnrollmentRequest,
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
) -> EnrollmentResponse | JSONResponse:
    """Provision a tunnel, DNS record and Access policy for a device serial.

    Returns 502 when a Cloudflare call or the local agent fails; the response
    names the step that failed. Objects created before the failure are not
    removed.
    """
    try:
        record = await orchestrator.provision(
            body.serial,
            service_address=body.service_address,
            service_token_id=body.service_token_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except ProvisioningAbortedError as e:
        failure = EnrollmentResponse(
            success=False,
            serial=body.serial,
            failed_step=str(e.step),
            error=str(e.error),
        )
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=failure.model_dump())

    return EnrollmentResponse(
        success=True,
        serial=record.serial,
        hostname=record.hostname,
        tunnel_id=record.tunnel_id,
        tunnel_token=record.tunnel_token,
    )


@router.get("/status", response_model=ProvisioningStatusResponse)
async def provisioning_status(
    settings: Settings = Depends(get_app_settings),
) -> ProvisioningStatusResponse:
    return ProvisioningStatusResponse(
        domain=settings.domain,
        access_enforcement=str(settings.access_enforcement),
        tenant_enforcement=str(settings.tenant_enforcement),
        local_serial=settings.local_serial,
        service_token_configured=settings.service_token_id is not None,
        access_verification_configured=settings.access_issuer is not None,
    )
