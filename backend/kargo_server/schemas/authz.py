from __future__ import annotations

from pydantic import BaseModel, Field

from kargo_server.services.k8s.authorization import AccessDecision


class AuthzCheck(BaseModel):
    verb: str
    resource: str
    group: str = ""
    version: str = "v1"
    subresource: str = ""
    namespace: str = ""
    name: str = ""


class AuthzMatrixRequest(BaseModel):
    checks: list[AuthzCheck] = Field(min_length=1, max_length=100)


class AuthzResult(BaseModel):
    check: AuthzCheck
    decision: AccessDecision
    message: str | None = None
