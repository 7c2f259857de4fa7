from fastapi import Request

from kargo_server.exceptions import NotAllowedError
from kargo_server.services.k8s.client import AuthorizingClient
from kargo_server.services.rbac.roles import RolesDatabase
from kargo_server.user import CallerIdentity


def get_kubernetes_client(request: Request) -> AuthorizingClient:
    return request.app.state.kube_client


def get_roles_database(request: Request) -> RolesDatabase:
    return request.app.state.roles_database


def get_caller_identity(request: Request) -> CallerIdentity | None:
    return getattr(request.state, "caller_identity", None)


def require_caller(request: Request) -> CallerIdentity:
    caller = get_caller_identity(request)
    if caller is None:
        raise NotAllowedError()
    return caller
