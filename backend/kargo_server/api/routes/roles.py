from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from kargo_server.dependencies import get_roles_database, require_caller
from kargo_server.schemas.rbac import (
    ClaimsRequest,
    KargoRole,
    KargoRoleCreate,
    KargoRoleUpdate,
    ResourceDetails,
)
from kargo_server.services.rbac.roles import RolesDatabase
from kargo_server.user import CallerIdentity, caller_context

router = APIRouter(prefix="/projects/{project}/roles", tags=["roles"])


@router.get("", response_model=list[KargoRole], summary="List roles in a project")
async def list_roles(
    project: str,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> list[KargoRole]:
    with caller_context(caller):
        return await db.list(project)


@router.get("/names", response_model=list[str])
async def list_role_names(
    project: str,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> list[str]:
    with caller_context(caller):
        return await db.list_names(project)


@router.get("/{name}", response_model=KargoRole)
async def get_role(
    project: str,
    name: str,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> KargoRole:
    with caller_context(caller):
        return await db.get(project, name)


@router.post("", response_model=KargoRole, status_code=status.HTTP_201_CREATED)
async def create_role(
    project: str,
    body: KargoRoleCreate,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> KargoRole:
    role = KargoRole(project=project, **body.model_dump())
    with caller_context(caller):
        return await db.create(role)


@router.put("/{name}", response_model=KargoRole)
async def update_role(
    project: str,
    name: str,
    body: KargoRoleUpdate,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> KargoRole:
    role = KargoRole(project=project, name=name, **body.model_dump())
    with caller_context(caller):
        return await db.update(role)


@router.delete("/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    project: str,
    name: str,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> Response:
    with caller_context(caller):
        await db.delete(project, name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{name}/permissions", response_model=KargoRole, summary="Grant permissions to a role")
async def grant_permissions(
    project: str,
    name: str,
    body: ResourceDetails,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> KargoRole:
    with caller_context(caller):
        return await db.grant_permissions_to_role(project, name, body)


@router.post("/{name}/permissions/revoke", response_model=KargoRole, summary="Revoke permissions from a role")
async def revoke_permissions(
    project: str,
    name: str,
    body: ResourceDetails,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> KargoRole:
    with caller_context(caller):
        return await db.revoke_permissions_from_role(project, name, body)


@router.post("/{name}/claims", response_model=KargoRole, summary="Grant a role to users matching claims")
async def grant_claims(
    project: str,
    name: str,
    body: ClaimsRequest,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> KargoRole:
    with caller_context(caller):
        return await db.grant_role_to_users(project, name, body.claims)


@router.post("/{name}/claims/revoke", response_model=KargoRole, summary="Revoke a role from users matching claims")
async def revoke_claims(
    project: str,
    name: str,
    body: ClaimsRequest,
    caller: CallerIdentity = Depends(require_caller),
    db: RolesDatabase = Depends(get_roles_database),
) -> KargoRole:
    with caller_context(caller):
        return await db.revoke_role_from_users(project, name, body.claims)
