"""
Type registry mapping Python objects to Kubernetes kinds.

Typed ``kubernetes.client`` models are registered by class; custom resources
are plain dicts and are recognised by their ``apiVersion``/``kind`` fields.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import client

from kargo_server.exceptions import NotRegisteredError

CORE_GROUP = ""
RBAC_GROUP = "rbac.authorization.k8s.io"
KARGO_GROUP = "kargo.akuity.io"
ROLLOUTS_GROUP = "argoproj.io"

LIST_SUFFIX = "List"


@dataclass(frozen=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    @property
    def is_list(self) -> bool:
        return len(self.kind) > len(LIST_SUFFIX) and self.kind.endswith(LIST_SUFFIX)

    def item_kind(self) -> "GroupVersionKind":
        """Return the kind of the elements when this is a collection kind."""
        if not self.is_list:
            return self
        return GroupVersionKind(self.group, self.version, self.kind[: -len(LIST_SUFFIX)])


class Scheme:
    """Registry of known kinds."""

    def __init__(self) -> None:
        self._by_type: dict[type, GroupVersionKind] = {}
        self._known: dict[GroupVersionKind, type | None] = {}

    def add_known_types(self, group: str, version: str, types: Mapping[str, type]) -> None:
        for kind, model in types.items():
            gvk = GroupVersionKind(group, version, kind)
            self._by_type[model] = gvk
            self._known[gvk] = model

    def add_known_kinds(self, group: str, version: str, kinds: Iterable[str]) -> None:
        """Register dict-represented kinds together with their ``<Kind>List``."""
        for kind in kinds:
            for name in (kind, kind + LIST_SUFFIX):
                self._known.setdefault(GroupVersionKind(group, version, name), None)

    def recognizes(self, gvk: GroupVersionKind) -> bool:
        return gvk in self._known

    def known_kinds(self) -> list[GroupVersionKind]:
        return sorted(self._known, key=lambda g: (g.group, g.version, g.kind))

    def object_kind(self, obj: Any) -> GroupVersionKind:
        """Return the kind of ``obj`` (a model class, a model instance or a dict)."""
        if isinstance(obj, type):
            gvk = self._by_type.get(obj)
            if gvk is None:
                raise NotRegisteredError(f"no kind is registered for the type {obj.__name__}")
            return gvk

        if isinstance(obj, Mapping):
            api_version = obj.get("apiVersion") or obj.get("api_version")
            kind = obj.get("kind")
            if not api_version or not kind:
                raise NotRegisteredError("object has no apiVersion/kind")
            gvk = GroupVersionKind.from_api_version(api_version, kind)
            if gvk not in self._known:
                raise NotRegisteredError(f'no kind "{kind}" is registered for version "{api_version}"')
            return gvk

        gvk = self._by_type.get(type(obj))
        if gvk is None:
            raise NotRegisteredError(f"no kind is registered for the type {type(obj).__name__}")
        return gvk


def new_default_scheme() -> Scheme:
    """Scheme with every kind the API server reads or writes."""
    scheme = Scheme()
    scheme.add_known_types(
        CORE_GROUP,
        "v1",
        {
            "ConfigMap": client.V1ConfigMap,
            "ConfigMapList": client.V1ConfigMapList,
            "Secret": client.V1Secret,
            "SecretList": client.V1SecretList,
            "ServiceAccount": client.V1ServiceAccount,
            "ServiceAccountList": client.V1ServiceAccountList,
            "Event": client.CoreV1Event,
            "EventList": client.CoreV1EventList,
            "Namespace": client.V1Namespace,
            "NamespaceList": client.V1NamespaceList,
        },
    )
    scheme.add_known_types(
        RBAC_GROUP,
        "v1",
        {
            "Role": client.V1Role,
            "RoleList": client.V1RoleList,
            "RoleBinding": client.V1RoleBinding,
            "RoleBindingList": client.V1RoleBindingList,
            "ClusterRole": client.V1ClusterRole,
            "ClusterRoleList": client.V1ClusterRoleList,
            "ClusterRoleBinding": client.V1ClusterRoleBinding,
            "ClusterRoleBindingList": client.V1ClusterRoleBindingList,
        },
    )
    # Core and RBAC kinds may also arrive as dicts returned by the dynamic client.
    scheme.add_known_kinds(CORE_GROUP, "v1", ["ConfigMap", "Secret", "ServiceAccount", "Event", "Namespace"])
    scheme.add_known_kinds(RBAC_GROUP, "v1", ["Role", "RoleBinding", "ClusterRole", "ClusterRoleBinding"])
    scheme.add_known_kinds(
        KARGO_GROUP,
        "v1alpha1",
        [
            "Project",
            "ProjectConfig",
            "Stage",
            "Warehouse",
            "Freight",
            "Promotion",
            "PromotionTask",
            "ClusterPromotionTask",
        ],
    )
    scheme.add_known_kinds(ROLLOUTS_GROUP, "v1alpha1", ["AnalysisRun", "AnalysisTemplate"])
    return scheme
