from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from kargo_server.dependencies import get_caller_identity, get_kubernetes_client
from kargo_server.exceptions import AppException, NotAllowedError
from kargo_server.schemas.authz import AuthzMatrixRequest, AuthzResult
from kargo_server.services.k8s.authorization import AccessDecision
from kargo_server.services.k8s.client import AuthorizingClient
from kargo_server.services.k8s.resources import ObjectKey, ResourceDescriptor
from kargo_server.user import CallerIdentity, caller_context

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/authz", tags=["authz"])


@router.post("/check", response_model=list[AuthzResult], summary="Batch pre-flight authorization checks")
async def check_authz(
    body: AuthzMatrixRequest,
    caller: CallerIdentity | None = Depends(get_caller_identity),
    kube: AuthorizingClient = Depends(get_kubernetes_client),
) -> list[AuthzResult]:
    if caller is None:
        raise NotAllowedError()

    results: list[AuthzResult] = []
    with caller_context(caller):
        for c in body.checks:
            descriptor = ResourceDescriptor(group=c.group, version=c.version, resource=c.resource)
            key = ObjectKey(namespace=c.namespace, name=c.name)
            try:
                await kube.authorize(c.verb, descriptor, key, subresource=c.subresource)
            except AppException as exc:
                decision = AccessDecision.from_error(exc)
                results.append(AuthzResult(check=c, decision=decision, message=exc.message))
                if decision is AccessDecision.ERROR:
                    logger.warning("authz.check_error", verb=c.verb, resource=c.resource, error=exc.message)
                continue
            results.append(AuthzResult(check=c, decision=AccessDecision.ALLOWED))
    return results
