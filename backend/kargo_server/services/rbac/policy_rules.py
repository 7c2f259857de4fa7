"""
Policy rule normalization.

Arbitrary grants are reduced to one rule per (group, resource, resource name)
with a sorted, de-duplicated verb list. The API group of every rule is looked
up from the resource type; whatever the input carried is discarded. Output
order is deterministic so normalized rules can be compared with, or written
over, stored Roles without churn.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import client

from kargo_server.exceptions import InvalidResourceTypeError
from kargo_server.services.k8s.scheme import CORE_GROUP, KARGO_GROUP, RBAC_GROUP, ROLLOUTS_GROUP

VERB_WILDCARD = "*"

BASE_VERBS: tuple[str, ...] = (
    "create",
    "delete",
    "deletecollection",
    "get",
    "list",
    "patch",
    "update",
    "watch",
)

CUSTOM_VERBS: Mapping[str, tuple[str, ...]] = {
    "stages": ("promote",),
}

RESOURCE_GROUPS: Mapping[str, str] = {
    "configmaps": CORE_GROUP,
    "events": CORE_GROUP,
    "secrets": CORE_GROUP,
    "serviceaccounts": CORE_GROUP,
    "rolebindings": RBAC_GROUP,
    "roles": RBAC_GROUP,
    "analysisruns": ROLLOUTS_GROUP,
    "analysistemplates": ROLLOUTS_GROUP,
    "freights": KARGO_GROUP,
    "projectconfigs": KARGO_GROUP,
    "promotions": KARGO_GROUP,
    "promotiontasks": KARGO_GROUP,
    "stages": KARGO_GROUP,
    "warehouses": KARGO_GROUP,
}


@dataclass(frozen=True)
class PolicyRuleNormalizationOptions:
    # Whether a wildcard verb also expands to verbs specific to a resource type.
    include_custom_verbs_in_expansion: bool = False


def validate_resource_type_name(resource_type: str) -> None:
    if resource_type in RESOURCE_GROUPS:
        return
    if f"{resource_type}s" in RESOURCE_GROUPS:
        raise InvalidResourceTypeError(resource_type, suggestion=f"{resource_type}s")
    raise InvalidResourceTypeError(resource_type)


def get_group_name(resource_type: str) -> str:
    validate_resource_type_name(resource_type)
    return RESOURCE_GROUPS[resource_type]


def all_verbs_for(resource_type: str, include_custom: bool) -> list[str]:
    verbs = list(BASE_VERBS)
    if include_custom:
        verbs.extend(CUSTOM_VERBS.get(resource_type, ()))
    return verbs


def policy_rule_key(group: str, resource: str, resource_name: str = "") -> str:
    key = f"{group or 'core'}/{resource}"
    if resource_name:
        key = f"{key}/{resource_name}"
    return key


def _field(rule: Any, snake: str, camel: str) -> list[str]:
    if isinstance(rule, Mapping):
        value = rule.get(camel, rule.get(snake))
    else:
        value = getattr(rule, snake, None)
    return list(value or [])


def coerce_policy_rule(rule: Any) -> client.V1PolicyRule:
    """Accept a ``V1PolicyRule`` or its dict form (API or snake_case keys)."""
    if isinstance(rule, client.V1PolicyRule):
        return rule
    return client.V1PolicyRule(
        api_groups=_field(rule, "api_groups", "apiGroups"),
        resources=_field(rule, "resources", "resources"),
        resource_names=_field(rule, "resource_names", "resourceNames") or None,
        verbs=_field(rule, "verbs", "verbs"),
    )


def policy_rule_to_dict(rule: client.V1PolicyRule) -> dict[str, Any]:
    body: dict[str, Any] = {
        "apiGroups": list(rule.api_groups or []),
        "resources": list(rule.resources or []),
        "verbs": list(rule.verbs or []),
    }
    if rule.resource_names:
        body["resourceNames"] = list(rule.resource_names)
    return body


def build_normalized_policy_rules_map(
    rules: Iterable[Any],
    options: PolicyRuleNormalizationOptions | None = None,
) -> dict[str, client.V1PolicyRule]:
    """Normalize ``rules`` into a map keyed by ``group/resource[/name]``."""
    options = options or PolicyRuleNormalizationOptions()
    accumulated: dict[tuple[str, str, str], set[str]] = {}

    for raw in rules:
        rule = coerce_policy_rule(raw)
        verbs = {v.strip() for v in rule.verbs or [] if v.strip()}
        names = [n.strip() for n in rule.resource_names or []] or [""]
        for resource in rule.resources or []:
            resource = resource.strip()
            group = get_group_name(resource)
            for name in names:
                accumulated.setdefault((group, resource, name), set()).update(verbs)

    normalized: dict[str, client.V1PolicyRule] = {}
    for (group, resource, name), verbs in accumulated.items():
        if VERB_WILDCARD in verbs:
            verbs = set(all_verbs_for(resource, options.include_custom_verbs_in_expansion))
        if not verbs:
            continue
        normalized[policy_rule_key(group, resource, name)] = client.V1PolicyRule(
            api_groups=[group],
            resources=[resource],
            resource_names=[name] if name else None,
            verbs=sorted(verbs),
        )
    return normalized


def normalize_policy_rules(
    rules: Iterable[Any],
    options: PolicyRuleNormalizationOptions | None = None,
) -> list[client.V1PolicyRule]:
    rules_map = build_normalized_policy_rules_map(rules, options)
    return [rules_map[key] for key in sorted(rules_map)]
