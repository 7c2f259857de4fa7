"""
Project roles stored as ServiceAccount/Role/RoleBinding trios.

Every read and write goes through the authorizing client, so role management
is itself subject to the caller's own permissions on those objects.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import structlog
from kubernetes import client

from kargo_server.exceptions import AlreadyExistsError, BadRequestError, InternalError, NotFoundError
from kargo_server.schemas.rbac import Claim, KargoRole, PolicyRuleEntry, ResourceDetails
from kargo_server.services.k8s.interfaces import Client, ListOptions
from kargo_server.services.k8s.resources import ObjectKey
from kargo_server.services.k8s.scheme import RBAC_GROUP

from .policy_rules import (
    VERB_WILDCARD,
    PolicyRuleNormalizationOptions,
    all_verbs_for,
    get_group_name,
    normalize_policy_rules,
    policy_rule_to_dict,
)

logger = structlog.get_logger(__name__)

ANNOTATION_KEY_MANAGED = "rbac.kargo.akuity.io/managed"
ANNOTATION_KEY_CLAIMS = "rbac.kargo.akuity.io/claims"
ANNOTATION_KEY_DESCRIPTION = "kargo.akuity.io/description"
ANNOTATION_VALUE_TRUE = "true"

_EXPAND_CUSTOM_VERBS = PolicyRuleNormalizationOptions(include_custom_verbs_in_expansion=True)


def _metadata(obj: Mapping[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def _annotations(obj: Mapping[str, Any]) -> dict[str, str]:
    return _metadata(obj).get("annotations") or {}


def is_kargo_managed(obj: Mapping[str, Any]) -> bool:
    return _annotations(obj).get(ANNOTATION_KEY_MANAGED) == ANNOTATION_VALUE_TRUE


def claims_from_annotations(annotations: Mapping[str, str] | None) -> dict[str, list[str]]:
    raw = (annotations or {}).get(ANNOTATION_KEY_CLAIMS)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise InternalError(f"failed to parse OIDC claims from annotation values: {exc}") from exc
    if not isinstance(parsed, dict):
        raise InternalError("failed to parse OIDC claims from annotation values: not an object")
    return {str(name): [str(v) for v in values or []] for name, values in parsed.items()}


def set_claims_annotation(obj: dict[str, Any], claims: Mapping[str, Sequence[str]]) -> None:
    metadata = obj.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    cleaned = {name: sorted(set(values)) for name, values in claims.items() if values}
    if cleaned:
        annotations[ANNOTATION_KEY_CLAIMS] = json.dumps(cleaned, sort_keys=True, separators=(",", ":"))
    else:
        annotations.pop(ANNOTATION_KEY_CLAIMS, None)
    metadata["annotations"] = annotations


def claim_list_to_map(claims: Iterable[Claim]) -> dict[str, list[str]]:
    merged: dict[str, set[str]] = {}
    for claim in claims:
        merged.setdefault(claim.name, set()).update(claim.values)
    return {name: sorted(values) for name, values in merged.items()}


def amend_claim_annotations(sa: dict[str, Any], claims: Mapping[str, Sequence[str]]) -> None:
    existing = claims_from_annotations(_annotations(sa))
    for name, values in claims.items():
        existing[name] = sorted(set(existing.get(name, [])) | set(values))
    set_claims_annotation(sa, existing)


def drop_from_claim_annotations(sa: dict[str, Any], claims: Mapping[str, Sequence[str]]) -> None:
    existing = claims_from_annotations(_annotations(sa))
    for name, values in claims.items():
        if name not in existing:
            continue
        remaining = sorted(set(existing[name]) - set(values))
        if remaining:
            existing[name] = remaining
        else:
            del existing[name]
    set_claims_annotation(sa, existing)


def _managed_metadata(namespace: str, name: str, extra: Mapping[str, str] | None = None) -> client.V1ObjectMeta:
    annotations = {ANNOTATION_KEY_MANAGED: ANNOTATION_VALUE_TRUE}
    annotations.update(extra or {})
    return client.V1ObjectMeta(namespace=namespace, name=name, annotations=annotations)


def build_new_service_account(namespace: str, name: str) -> client.V1ServiceAccount:
    return client.V1ServiceAccount(
        api_version="v1",
        kind="ServiceAccount",
        metadata=_managed_metadata(namespace, name),
    )


def build_new_role(namespace: str, name: str, rules: list[client.V1PolicyRule] | None = None) -> client.V1Role:
    return client.V1Role(
        api_version=f"{RBAC_GROUP}/v1",
        kind="Role",
        metadata=_managed_metadata(namespace, name),
        rules=rules or [],
    )


def build_new_role_binding(namespace: str, role_name: str) -> client.V1RoleBinding:
    return client.V1RoleBinding(
        api_version=f"{RBAC_GROUP}/v1",
        kind="RoleBinding",
        metadata=_managed_metadata(namespace, role_name),
        role_ref=client.V1RoleRef(api_group=RBAC_GROUP, kind="Role", name=role_name),
        subjects=[client.RbacV1Subject(kind="ServiceAccount", namespace=namespace, name=role_name)],
    )


def role_to_resources(role: KargoRole) -> tuple[dict[str, Any], client.V1Role, client.V1RoleBinding]:
    """Build the trio for ``role``; the Role's rules come out normalized."""
    sa_model = build_new_service_account(role.project, role.name)
    if role.description is not None:
        sa_model.metadata.annotations[ANNOTATION_KEY_DESCRIPTION] = role.description
    sa = client.ApiClient().sanitize_for_serialization(sa_model)
    amend_claim_annotations(sa, claim_list_to_map(role.claims))

    rules = normalize_policy_rules([r.to_model() for r in role.rules], _EXPAND_CUSTOM_VERBS)
    return sa, build_new_role(role.project, role.name, rules), build_new_role_binding(role.project, role.name)


def resources_to_role(
    sa: Mapping[str, Any],
    roles: Sequence[Mapping[str, Any]] = (),
    role_bindings: Sequence[Mapping[str, Any]] = (),
) -> KargoRole:
    metadata = _metadata(sa)
    annotations = _annotations(sa)

    managed = (
        is_kargo_managed(sa)
        and (len(roles) == 0 or (len(roles) == 1 and is_kargo_managed(roles[0])))
        and (len(role_bindings) == 0 or (len(role_bindings) == 1 and is_kargo_managed(role_bindings[0])))
    )

    claims = [
        Claim(name=name, values=values)
        for name, values in sorted(claims_from_annotations(annotations).items())
    ]

    raw_rules = [rule for role in roles for rule in (role.get("rules") or [])]
    # Rules of unmanaged roles may use anything RBAC allows, so they are shown as stored.
    if managed:
        rules = [PolicyRuleEntry.from_model(r) for r in normalize_policy_rules(raw_rules)]
    else:
        rules = [PolicyRuleEntry.model_validate(r) for r in raw_rules]

    return KargoRole(
        project=metadata.get("namespace") or "",
        name=metadata.get("name") or "",
        description=annotations.get(ANNOTATION_KEY_DESCRIPTION),
        kargo_managed=managed,
        claims=claims,
        rules=rules,
        creation_timestamp=metadata.get("creationTimestamp"),
    )


def manageable_resources(
    sa: Mapping[str, Any],
    roles: Sequence[dict[str, Any]],
    role_bindings: Sequence[dict[str, Any]],
) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    """Return the single Role and RoleBinding of a trio that may be modified."""
    sa_meta = _metadata(sa)
    sa_name, sa_namespace = sa_meta.get("name"), sa_meta.get("namespace")
    if not is_kargo_managed(sa):
        raise BadRequestError(
            f'ServiceAccount "{sa_name}" in namespace "{sa_namespace}" is not annotated as Kargo-managed'
        )
    if len(roles) > 1:
        raise BadRequestError(
            f'multiple Roles associated with ServiceAccount "{sa_name}" in namespace "{sa_namespace}"'
        )
    role = roles[0] if roles else None
    if role is not None and not is_kargo_managed(role):
        raise BadRequestError(
            f'Role "{_metadata(role).get("name")}" in namespace "{sa_namespace}" is not annotated as Kargo-managed'
        )
    if len(role_bindings) > 1:
        raise BadRequestError(
            f'multiple RoleBindings associated with ServiceAccount "{sa_name}" in namespace "{sa_namespace}"'
        )
    role_binding = role_bindings[0] if role_bindings else None
    if role_binding is not None and not is_kargo_managed(role_binding):
        raise BadRequestError(
            f'RoleBinding "{_metadata(role_binding).get("name")}" in namespace "{sa_namespace}" '
            "is not annotated as Kargo-managed"
        )
    return role, role_binding


def _expand_wildcard(resource_type: str, verbs: Iterable[str]) -> list[str]:
    cleaned = {v.strip() for v in verbs if v.strip()}
    if VERB_WILDCARD in cleaned:
        cleaned.discard(VERB_WILDCARD)
        cleaned.update(all_verbs_for(resource_type, True))
    return sorted(cleaned)


def _binds_service_account(role_binding: Mapping[str, Any], namespace: str, name: str) -> bool:
    return any(
        subject.get("kind") == "ServiceAccount"
        and subject.get("namespace") == namespace
        and subject.get("name") == name
        for subject in role_binding.get("subjects") or []
    )


class RolesDatabase:
    def __init__(self, kube_client: Client) -> None:
        self._client = kube_client

    async def _exists(self, kind: type, namespace: str, name: str) -> bool:
        try:
            await self._client.get(kind, ObjectKey(namespace=namespace, name=name))
        except NotFoundError:
            return False
        return True

    async def create(self, role: KargoRole) -> KargoRole:
        for kind, resource in (
            (client.V1ServiceAccount, "serviceaccounts"),
            (client.V1Role, "roles"),
            (client.V1RoleBinding, "rolebindings"),
        ):
            if await self._exists(kind, role.project, role.name):
                raise AlreadyExistsError(f'{resource} "{role.name}" already exists')

        sa, k8s_role, role_binding = role_to_resources(role)
        created_sa = await self._client.create(sa)
        created_rb = await self._client.create(role_binding)
        created_role = await self._client.create(k8s_role)
        logger.info("roles.created", project=role.project, role=role.name)
        return resources_to_role(created_sa, [created_role], [created_rb])

    async def delete(self, project: str, name: str) -> None:
        sa, roles, role_bindings = await self.get_as_resources(project, name)
        role, role_binding = manageable_resources(sa, roles, role_bindings)
        if role is not None:
            await self._client.delete(role)
        if role_binding is not None:
            await self._client.delete(role_binding)
        await self._client.delete(sa)
        logger.info("roles.deleted", project=project, role=name)

    async def get(self, project: str, name: str) -> KargoRole:
        sa, roles, role_bindings = await self.get_as_resources(project, name)
        return resources_to_role(sa, roles, role_bindings)

    async def get_as_resources(
        self, project: str, name: str
    ) -> tuple[dict[str, Any], list[dict[str, Any]], list[dict[str, Any]]]:
        """Fetch the ServiceAccount plus every RoleBinding binding it and their Roles."""
        sa = await self._client.get(client.V1ServiceAccount, ObjectKey(namespace=project, name=name))

        listed = await self._client.list(client.V1RoleBindingList, ListOptions(namespace=project))
        role_bindings = [
            rb for rb in listed.get("items") or [] if _binds_service_account(rb, project, name)
        ]

        roles = []
        for rb in role_bindings:
            role_name = (rb.get("roleRef") or {}).get("name", "")
            roles.append(await self._client.get(client.V1Role, ObjectKey(namespace=project, name=role_name)))
        return sa, roles, role_bindings

    async def list(self, project: str) -> list[KargoRole]:
        listed = await self._client.list(client.V1ServiceAccountList, ListOptions(namespace=project))
        kargo_roles = []
        for item in listed.get("items") or []:
            sa, roles, role_bindings = await self.get_as_resources(project, _metadata(item).get("name", ""))
            kargo_roles.append(resources_to_role(sa, roles, role_bindings))
        return sorted(kargo_roles, key=lambda r: r.name)

    async def list_names(self, project: str) -> list[str]:
        listed = await self._client.list(client.V1ServiceAccountList, ListOptions(namespace=project))
        return sorted(_metadata(item).get("name", "") for item in listed.get("items") or [])

    async def update(self, role: KargoRole) -> KargoRole:
        sa, roles, role_bindings = await self.get_as_resources(role.project, role.name)
        existing_role, role_binding = manageable_resources(sa, roles, role_bindings)

        set_claims_annotation(sa, claim_list_to_map(role.claims))
        annotations = sa["metadata"]["annotations"]
        if role.description is not None:
            annotations[ANNOTATION_KEY_DESCRIPTION] = role.description
        else:
            annotations.pop(ANNOTATION_KEY_DESCRIPTION, None)
        sa = await self._client.update(sa)

        rules = normalize_policy_rules([r.to_model() for r in role.rules], _EXPAND_CUSTOM_VERBS)
        saved_role = await self._save_rules(role.project, role.name, existing_role, rules)

        if role_binding is None:
            role_binding = await self._client.create(build_new_role_binding(role.project, role.name))
        logger.info("roles.updated", project=role.project, role=role.name)
        return resources_to_role(sa, [saved_role], [role_binding])

    async def _save_rules(
        self,
        project: str,
        name: str,
        existing_role: dict[str, Any] | None,
        rules: list[client.V1PolicyRule],
    ) -> dict[str, Any]:
        if existing_role is None:
            return await self._client.create(build_new_role(project, name, rules))
        existing_role["rules"] = [policy_rule_to_dict(r) for r in rules]
        return await self._client.update(existing_role)

    async def grant_permissions_to_role(self, project: str, name: str, details: ResourceDetails) -> KargoRole:
        sa, roles, role_bindings = await self.get_as_resources(project, name)
        existing_role, role_binding = manageable_resources(sa, roles, role_bindings)

        group = get_group_name(details.resource_type)
        new_rule = client.V1PolicyRule(
            api_groups=[group],
            resources=[details.resource_type],
            resource_names=[details.resource_name] if details.resource_name else None,
            verbs=_expand_wildcard(details.resource_type, details.verbs),
        )
        current = (existing_role or {}).get("rules") or []
        rules = normalize_policy_rules([*current, new_rule])
        saved_role = await self._save_rules(project, name, existing_role, rules)

        if role_binding is None:
            role_binding = await self._client.create(build_new_role_binding(project, name))
        logger.info(
            "roles.permissions_granted",
            project=project,
            role=name,
            resource_type=details.resource_type,
            resource_name=details.resource_name,
        )
        return resources_to_role(sa, [saved_role], [role_binding])

    async def revoke_permissions_from_role(self, project: str, name: str, details: ResourceDetails) -> KargoRole:
        sa, roles, role_bindings = await self.get_as_resources(project, name)
        existing_role, _ = manageable_resources(sa, roles, role_bindings)
        if existing_role is None:
            return resources_to_role(sa, [], role_bindings)

        current = normalize_policy_rules(existing_role.get("rules") or [])
        group = get_group_name(details.resource_type)
        revoked = set(_expand_wildcard(details.resource_type, details.verbs))

        kept: list[client.V1PolicyRule] = []
        for rule in current:
            rule_name = rule.resource_names[0] if rule.resource_names else ""
            if (
                rule.api_groups[0] != group
                or rule.resources[0] != details.resource_type
                or (details.resource_name and rule_name != details.resource_name)
            ):
                kept.append(rule)
                continue
            rule.verbs = [v for v in rule.verbs if v not in revoked]
            if rule.verbs:
                kept.append(rule)

        saved_role = await self._save_rules(project, name, existing_role, kept)
        logger.info(
            "roles.permissions_revoked",
            project=project,
            role=name,
            resource_type=details.resource_type,
            resource_name=details.resource_name,
        )
        return resources_to_role(sa, [saved_role], role_bindings)

    async def grant_role_to_users(self, project: str, name: str, claims: Sequence[Claim]) -> KargoRole:
        sa, roles, role_bindings = await self.get_as_resources(project, name)
        existing_role, _ = manageable_resources(sa, roles, role_bindings)
        amend_claim_annotations(sa, claim_list_to_map(claims))
        sa = await self._client.update(sa)
        logger.info("roles.claims_granted", project=project, role=name, claims=[c.name for c in claims])
        return resources_to_role(sa, [existing_role] if existing_role else [], role_bindings)

    async def revoke_role_from_users(self, project: str, name: str, claims: Sequence[Claim]) -> KargoRole:
        sa, roles, role_bindings = await self.get_as_resources(project, name)
        existing_role, _ = manageable_resources(sa, roles, role_bindings)
        drop_from_claim_annotations(sa, claim_list_to_map(claims))
        sa = await self._client.update(sa)
        logger.info("roles.claims_revoked", project=project, role=name, claims=[c.name for c in claims])
        return resources_to_role(sa, [existing_role] if existing_role else [], role_bindings)
