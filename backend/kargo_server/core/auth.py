from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Union

from fastapi import Request

from kargo_server.user import CallerIdentity

IdentityResolver = Callable[[Request], Union[CallerIdentity, None, Awaitable[Union[CallerIdentity, None]]]]


def bearer_token(request: Request) -> str | None:
    # Accept: Authorization: Bearer <token>
    authz = request.headers.get("Authorization")
    if not authz or not authz.lower().startswith("bearer "):
        return None
    token = authz.split(" ", 1)[1].strip()
    return token or None


def bearer_token_identity(request: Request) -> CallerIdentity | None:
    """Default resolver: the presented token is reviewed as-is, with no claims.

    Deployments that exchange OIDC tokens for ServiceAccount mappings plug in
    their own resolver through ``create_app(identity_resolver=...)``.
    """
    token = bearer_token(request)
    if token is None:
        return None
    return CallerIdentity(bearer_token=token)


async def resolve_identity(resolver: IdentityResolver, request: Request) -> CallerIdentity | None:
    result = resolver(request)
    if inspect.isawaitable(result):
        result = await result
    return result
