from __future__ import annotations

from datetime import datetime

from kubernetes import client
from pydantic import BaseModel, ConfigDict, Field


class Claim(BaseModel):
    name: str
    values: list[str] = Field(default_factory=list)


class PolicyRuleEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_groups: list[str] = Field(default_factory=list, alias="apiGroups")
    resources: list[str] = Field(default_factory=list)
    resource_names: list[str] = Field(default_factory=list, alias="resourceNames")
    verbs: list[str] = Field(default_factory=list)

    def to_model(self) -> client.V1PolicyRule:
        return client.V1PolicyRule(
            api_groups=list(self.api_groups),
            resources=list(self.resources),
            resource_names=list(self.resource_names) or None,
            verbs=list(self.verbs),
        )

    @classmethod
    def from_model(cls, rule: client.V1PolicyRule) -> "PolicyRuleEntry":
        return cls(
            api_groups=list(rule.api_groups or []),
            resources=list(rule.resources or []),
            resource_names=list(rule.resource_names or []),
            verbs=list(rule.verbs or []),
        )


class KargoRole(BaseModel):
    """A ServiceAccount/Role/RoleBinding trio presented as a single role."""

    model_config = ConfigDict(populate_by_name=True)

    project: str
    name: str
    description: str | None = None
    kargo_managed: bool = False
    claims: list[Claim] = Field(default_factory=list)
    rules: list[PolicyRuleEntry] = Field(default_factory=list)
    creation_timestamp: datetime | None = None


class KargoRoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=253, pattern=r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
    description: str | None = None
    claims: list[Claim] = Field(default_factory=list)
    rules: list[PolicyRuleEntry] = Field(default_factory=list)


class KargoRoleUpdate(BaseModel):
    description: str | None = None
    claims: list[Claim] = Field(default_factory=list)
    rules: list[PolicyRuleEntry] = Field(default_factory=list)


class ResourceDetails(BaseModel):
    resource_type: str
    resource_name: str = ""
    verbs: list[str] = Field(min_length=1)


class ClaimsRequest(BaseModel):
    claims: list[Claim] = Field(min_length=1)


class RoleResources(BaseModel):
    """Raw objects backing a role, as returned by the cluster."""

    service_account: dict
    roles: list[dict] = Field(default_factory=list)
    role_bindings: list[dict] = Field(default_factory=list)
