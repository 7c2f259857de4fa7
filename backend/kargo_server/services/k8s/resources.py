"""
Resource descriptors and the kind -> resource mapping.

Every authorization decision is made against a ``ResourceDescriptor``
(group, version, plural resource, subresource) derived from the object the
caller hands to the client, never from caller-supplied names.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Protocol

import structlog

from .scheme import GroupVersionKind, Scheme

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceDescriptor:
    group: str
    version: str
    resource: str
    subresource: str = ""

    def with_subresource(self, subresource: str) -> "ResourceDescriptor":
        return replace(self, subresource=subresource)

    @property
    def group_resource(self) -> str:
        return f"{self.resource}.{self.group}" if self.group else self.resource


@dataclass(frozen=True)
class ObjectKey:
    namespace: str = ""
    name: str = ""

    @classmethod
    def from_object(cls, obj: Any) -> "ObjectKey":
        if isinstance(obj, Mapping):
            metadata = obj.get("metadata") or {}
            return cls(namespace=metadata.get("namespace") or "", name=metadata.get("name") or "")
        metadata = getattr(obj, "metadata", None)
        if metadata is None:
            return cls()
        return cls(namespace=getattr(metadata, "namespace", None) or "", name=getattr(metadata, "name", None) or "")


class RESTMapper(Protocol):
    async def resource_for(self, gvk: GroupVersionKind) -> ResourceDescriptor: ...


def unsafe_guess_kind_to_resource(kind: str) -> str:
    """Pluralize a kind the way the API server's own guessing mapper does."""
    singular = kind.lower()
    if not singular:
        return singular
    if singular.endswith("endpoints"):
        return singular
    last = singular[-1]
    if last == "s":
        return singular + "es"
    if last == "y":
        return singular[:-1] + "ies"
    return singular + "s"


class GuessingRESTMapper:
    async def resource_for(self, gvk: GroupVersionKind) -> ResourceDescriptor:
        return ResourceDescriptor(
            group=gvk.group,
            version=gvk.version,
            resource=unsafe_guess_kind_to_resource(gvk.kind),
        )


class DiscoveryRESTMapper:
    """Resolve plural names from the API server's discovery documents.

    ``lookup(api_version, kind)`` returns the plural resource name for a kind
    and raises ``NotRegisteredError`` when the server does not serve it. It is
    only awaited on a cache miss.
    """

    def __init__(self, lookup: Callable[[str, str], Awaitable[str]]) -> None:
        self._lookup = lookup
        self._cache: dict[GroupVersionKind, ResourceDescriptor] = {}
        self._lock = asyncio.Lock()

    async def resource_for(self, gvk: GroupVersionKind) -> ResourceDescriptor:
        cached = self._cache.get(gvk)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._cache.get(gvk)
            if cached is not None:
                return cached

            name = await self._lookup(gvk.api_version, gvk.kind)
            descriptor = ResourceDescriptor(group=gvk.group, version=gvk.version, resource=name)
            self._cache[gvk] = descriptor
            logger.debug("rest_mapper.discovered", kind=gvk.kind, resource=descriptor.group_resource)
            return descriptor


async def resolve(
    obj: Any,
    scheme: Scheme,
    mapper: RESTMapper | None = None,
) -> tuple[ResourceDescriptor, ObjectKey | None]:
    """Derive the descriptor (and key, for a concrete object) for ``obj``.

    A collection kind is resolved to the resource of its elements so that list
    operations are authorized against the same resource as item operations.
    """
    gvk = scheme.object_kind(obj)
    descriptor = await (mapper or GuessingRESTMapper()).resource_for(gvk.item_kind())
    if gvk.is_list or isinstance(obj, type):
        return descriptor, None
    return descriptor, ObjectKey.from_object(obj)
