"""Cloudflare Access request gate.

Requests reaching a tenant device through its tunnel carry a signed
``Cf-Access-Jwt-Assertion`` header. This middleware hands that assertion to
``AccessTokenValidator`` and, depending on the enforcement mode, rejects,
logs or ignores failures. The mode is read once per request.
"""

import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from tunnel_provisioner.core.config import EnforcementMode
from tunnel_provisioner.services.access_jwt import ASSERTION_HEADER, AccessTokenValidator

logger = logging.getLogger(__name__)

# Paths reachable without an assertion (exact or segment-boundary match).
# Enrollment returns a tunnel token and is never excluded.
DEFAULT_EXCLUDED_PATHS = (
    "/api/health",
    "/api/provisioning/status",
)


def is_excluded_path(path: str, excluded_paths: tuple[str, ...]) -> bool:
    return any(path == excluded or path.startswith(excluded + "/") for excluded in excluded_paths)


class CloudflareAccessMiddleware(BaseHTTPMiddleware):
    """Gate requests on a valid Cloudflare Access assertion.

    - disabled: requests pass without any check
    - permissive: assertions are validated and failures logged; requests pass
    - enforced: a missing or invalid assertion returns 401

    Accepted claims are stored on ``request.state.access_claims`` and the
    subject on ``request.state.access_subject``.
    """

    def __init__(
        self,
        app: ASGIApp,
        validator: AccessTokenValidator,
        mode: EnforcementMode = EnforcementMode.ENFORCED,
        excluded_paths: tuple[str, ...] = DEFAULT_EXCLUDED_PATHS,
    ):
        super().__init__(app)
        self.validator = validator
        self.mode = mode
        self.excluded_paths = excluded_paths

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        mode = self.mode
        path = request.url.path

        request.state.access_claims = None
        request.state.access_subject = None

        if mode == EnforcementMode.DISABLED:
            return await call_next(request)

        if request.method == "OPTIONS" or is_excluded_path(path, self.excluded_paths):
            return await call_next(request)

        assertion = request.headers.get(ASSERTION_HEADER)
        if not assertion:
            if mode == EnforcementMode.ENFORCED:
                logger.warning(f"Request without Access assertion: {request.method} {path}")
                return JSONResponse(
                    status_code=401,
                    content={"detail": f"Missing {ASSERTION_HEADER} header"},
                )
            logger.info(f"Permissive mode: no Access assertion for {request.method} {path}")
            return await call_next(request)

        accepted, claims = await self.validator.validate(assertion)
        if not accepted:
            if mode == EnforcementMode.ENFORCED:
                return JSONResponse(
                    status_code=401,
                    content={"detail": "Invalid or expired Access assertion"},
                )
            logger.info(f"Permissive mode: invalid Access assertion for {request.method} {path}")
            return await call_next(request)

        request.state.access_claims = claims
        request.state.access_subject = claims.get("sub") if claims else None
        return await call_next(request)
