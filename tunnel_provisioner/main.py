"""Tunnel Provisioner - FastAPI Application Factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from tunnel_provisioner import __version__
from tunnel_provisioner.api import api_router
from tunnel_provisioner.core import EnforcementMode, Settings, get_settings, setup_logging
from tunnel_provisioner.middleware import CloudflareAccessMiddleware, TenantSerialMiddleware
from tunnel_provisioner.services.access_jwt import AccessTokenValidator
from tunnel_provisioner.services.cloudflare_api import CloudflareApiClient
from tunnel_provisioner.services.provisioning import ProvisioningOrchestrator
from tunnel_provisioner.services.tunnel_agent import CloudflaredAgent

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = app.state.settings
    setup_logging(settings.log_level, settings.log_format)  # type: ignore[arg-type]
    logger.info(f"Starting tunnel provisioner v{__version__} for *.{settings.domain}")

    if settings.access_enforcement != EnforcementMode.DISABLED and not settings.access_issuer:
        logger.warning(
            "Access enforcement is %s but no Access team is configured; "
            "all assertions will be rejected",
            settings.access_enforcement,
        )

    yield

    logger.info("Shutting down...")
    await app.state.http_client.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    if settings.tenant_enforcement != EnforcementMode.DISABLED and not settings.local_serial:
        raise ValueError("local_serial is required when tenant enforcement is enabled")

    app = FastAPI(
        title="Tunnel Provisioner",
        description="Cloudflare tunnel and Access provisioning for tenant devices",
        version=__version__,
        lifespan=lifespan,
    )

    # One connection pool shared by the API client and the JWKS fetcher
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    validator = AccessTokenValidator(settings, http_client=http_client)
    client = CloudflareApiClient(settings, http_client=http_client)
    agent = CloudflaredAgent(settings.cloudflared_path)

    app.state.settings = settings
    app.state.http_client = http_client
    app.state.validator = validator
    app.state.orchestrator = ProvisioningOrchestrator(client, agent, settings)

    # Starlette runs the last-added middleware first: tenant check, then Access
    app.add_middleware(
        CloudflareAccessMiddleware,
        validator=validator,
        mode=settings.access_enforcement,
    )
    if settings.local_serial:
        app.add_middleware(
            TenantSerialMiddleware,
            local_serial=settings.local_serial,
            mode=settings.tenant_enforcement,
        )

    app.include_router(api_router)
    return app
