from fastapi import APIRouter

from kargo_server.api.routes import authz, roles

api_router = APIRouter(prefix="/api")
api_router.include_router(authz.router)
api_router.include_router(roles.router)
