# Tunnel Provisioner API
from fastapi import APIRouter

from tunnel_provisioner.api.provisioning import health_router
from tunnel_provisioner.api.provisioning import router as provisioning_router

api_router = APIRouter(prefix="/api")
api_router.include_router(health_router)
api_router.include_router(provisioning_router)

__all__ = ["api_router"]
