"""Tenant isolation by hostname.

A device is reached at ``<serial>.<domain>``. This middleware reads the serial
from the first label of the request host and makes sure an instance only
answers for its own serial.
"""

import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from tunnel_provisioner.core.config import EnforcementMode, is_valid_serial
from tunnel_provisioner.middleware.access_gate import is_excluded_path

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_PATHS = (
    "/api/health",
    "/api/provisioning/enroll",
)


def serial_from_host(host: str | None) -> str | None:
    """Return the first label of ``host`` when it has at least two labels."""
    if not host:
        return None
    parts = host.split(".")
    if len(parts) < 2 or not parts[0]:
        return None
    return parts[0]


class TenantSerialMiddleware(BaseHTTPMiddleware):
    """Reject requests addressed to another tenant's hostname.

    The resolved serial is stored on ``request.state.tenant_serial``.
    """

    def __init__(
        self,
        app: ASGIApp,
        local_serial: str,
        mode: EnforcementMode = EnforcementMode.ENFORCED,
        excluded_paths: tuple[str, ...] = DEFAULT_EXCLUDED_PATHS,
    ):
        super().__init__(app)
        self.local_serial = local_serial
        self.mode = mode
        self.excluded_paths = excluded_paths

    def _reject(self, mode: EnforcementMode, status_code: int, detail: str) -> Response | None:
        if mode == EnforcementMode.ENFORCED:
            return JSONResponse(status_code=status_code, content={"detail": detail})
        logger.info(f"Permissive mode: {detail}")
        return None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        mode = self.mode
        request.state.tenant_serial = None

        if mode == EnforcementMode.DISABLED or is_excluded_path(
            request.url.path, self.excluded_paths
        ):
            return await call_next(request)

        serial = serial_from_host(request.url.hostname)
        if serial is None:
            rejection = self._reject(
                mode, 400, "Invalid hostname. Expected format: <serial>.<domain>"
            )
        elif not is_valid_serial(serial):
            rejection = self._reject(mode, 400, f"Invalid serial in hostname: {serial}")
        elif serial.lower() != self.local_serial.lower():
            rejection = self._reject(
                mode,
                404,
                f"Tenant '{serial}' is not served by this instance",
            )
        else:
            request.state.tenant_serial = serial
            rejection = None

        if rejection is not None:
            logger.warning(f"Tenant check failed for host {request.url.hostname}")
            return rejection
        return await call_next(request)
