import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request

from .api.router import api_router
from .config import Settings, get_settings
from .core.auth import IdentityResolver, bearer_token_identity, resolve_identity
from .core.logging import setup_logging
from .core.request_context import request_id_var
from .exceptions import AppException, register_exception_handlers
from .services.k8s.client import AuthorizingClient, new_client
from .services.k8s.rest_config import load_rest_config
from .services.rbac.roles import RolesDatabase

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    kube_client: Optional[AuthorizingClient] = None,
) -> FastAPI:
    """Assemble the API server.

    Args:
        settings: defaults to ``get_settings()``
        identity_resolver: builds the caller identity of a request; the
            default trusts nothing but a bearer token
        kube_client: the authorizing client; built from the kubeconfig or
            in-cluster configuration at startup when omitted
    """
    settings = settings or get_settings()
    resolver = identity_resolver or bearer_token_identity

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "kube_client", None) is None:
            _attach_client(app, new_client(settings, load_rest_config(settings)))
        logger.info(
            "server.started",
            env=settings.app_env,
            skip_authorization=settings.skip_authorization,
            rest_mapping=settings.rest_mapping,
        )
        yield
        logger.info("server.stopping")

    app = FastAPI(
        title="Kargo API Server",
        description="Control-plane API authorizing every cluster operation as the calling user",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.kube_client = None
    if kube_client is not None:
        _attach_client(app, kube_client)

    @app.middleware("http")
    async def identity(request: Request, call_next):
        try:
            request.state.caller_identity = await resolve_identity(resolver, request)
        except AppException as exc:
            logger.warning("auth.identity_unresolved", path=request.url.path, error=exc.message)
            request.state.caller_identity = None
        return await call_next(request)

    # Registered last so it runs first and every later log line carries the id
    @app.middleware("http")
    async def request_id(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/healthz")
    async def health_check():
        return {"status": "healthy"}

    return app


def _attach_client(app: FastAPI, kube_client: AuthorizingClient) -> None:
    app.state.kube_client = kube_client
    app.state.roles_database = RolesDatabase(kube_client)


def build_app() -> FastAPI:
    """Entry point for ``uvicorn --factory``."""
    setup_logging()
    return create_app()
