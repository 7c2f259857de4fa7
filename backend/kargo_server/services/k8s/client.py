"""
Client that authorizes every operation as the calling user.

The server's own connection is privileged, so each verb is first checked
against the caller bound to the current context (see ``kargo_server.user``)
and only delegated once that check passed. A denied operation never reaches
the cluster.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

import structlog
from kubernetes import client as k8s_client

from kargo_server.config import Settings

from .access_review import KubernetesAccessReviewer
from .authorization import AllowAllAuthorizer, Authorizer
from .interfaces import Client, DeleteAllOfOptions, ListOptions, Patch, SubResourceClient, WatchEvent
from .internal_client import DynamicInternalClient
from .resources import DiscoveryRESTMapper, GuessingRESTMapper, ObjectKey, RESTMapper, ResourceDescriptor, resolve
from .scheme import Scheme, new_default_scheme

logger = structlog.get_logger(__name__)

VERB_GET = "get"
VERB_LIST = "list"
VERB_CREATE = "create"
VERB_UPDATE = "update"
VERB_PATCH = "patch"
VERB_DELETE = "delete"
VERB_DELETE_COLLECTION = "deletecollection"
VERB_WATCH = "watch"


class AuthorizationCheck(Protocol):
    async def authorize(
        self,
        verb: str,
        descriptor: ResourceDescriptor,
        key: ObjectKey | None = None,
    ) -> None: ...


class AuthorizingClient(Client):
    def __init__(
        self,
        internal: Client,
        authorizer: AuthorizationCheck,
        mapper: RESTMapper | None = None,
    ) -> None:
        self._internal = internal
        self._authorizer = authorizer
        self._mapper = mapper or GuessingRESTMapper()

    @property
    def scheme(self) -> Scheme:
        return self._internal.scheme

    @property
    def internal_client(self) -> Client:
        """The unauthorized connection, for work the server does on its own behalf."""
        return self._internal

    async def resolve(self, obj: Any) -> tuple[ResourceDescriptor, ObjectKey | None]:
        return await resolve(obj, self.scheme, self._mapper)

    async def authorize(
        self,
        verb: str,
        descriptor: ResourceDescriptor,
        key: ObjectKey | None = None,
        *,
        subresource: str = "",
    ) -> None:
        """Check a capability without performing any operation."""
        if subresource:
            descriptor = descriptor.with_subresource(subresource)
        await self._authorizer.authorize(verb, descriptor, key)

    async def _authorize_object(self, verb: str, obj: Any) -> None:
        descriptor, key = await self.resolve(obj)
        await self._authorizer.authorize(verb, descriptor, key)

    async def _authorize_collection(self, verb: str, obj_list: Any, namespace: str) -> None:
        descriptor, _ = await self.resolve(obj_list)
        await self._authorizer.authorize(verb, descriptor, ObjectKey(namespace=namespace))

    async def get(self, obj: Any, key: ObjectKey) -> dict[str, Any]:
        descriptor, _ = await self.resolve(obj)
        await self._authorizer.authorize(VERB_GET, descriptor, key)
        return await self._internal.get(obj, key)

    async def list(self, obj_list: Any, options: ListOptions | None = None) -> dict[str, Any]:
        options = options or ListOptions()
        await self._authorize_collection(VERB_LIST, obj_list, options.namespace)
        return await self._internal.list(obj_list, options)

    async def create(self, obj: Any) -> dict[str, Any]:
        await self._authorize_object(VERB_CREATE, obj)
        return await self._internal.create(obj)

    async def update(self, obj: Any) -> dict[str, Any]:
        await self._authorize_object(VERB_UPDATE, obj)
        return await self._internal.update(obj)

    async def patch(self, obj: Any, patch: Patch) -> dict[str, Any]:
        await self._authorize_object(VERB_PATCH, obj)
        return await self._internal.patch(obj, patch)

    async def delete(self, obj: Any, *, propagation_policy: str | None = None) -> None:
        await self._authorize_object(VERB_DELETE, obj)
        await self._internal.delete(obj, propagation_policy=propagation_policy)

    async def delete_all_of(self, obj: Any, options: DeleteAllOfOptions | None = None) -> None:
        options = options or DeleteAllOfOptions()
        await self._authorize_collection(VERB_DELETE_COLLECTION, obj, options.namespace)
        await self._internal.delete_all_of(obj, options)

    async def watch(self, obj_list: Any, options: ListOptions | None = None) -> AsyncIterator[WatchEvent]:
        # Checked once, before the watch is opened; events are not re-checked.
        options = options or ListOptions()
        await self._authorize_collection(VERB_WATCH, obj_list, options.namespace)
        return await self._internal.watch(obj_list, options)

    def sub_resource(self, name: str) -> SubResourceClient:
        return AuthorizingSubResourceClient(self, self._internal.sub_resource(name), name)


class AuthorizingSubResourceClient(SubResourceClient):
    def __init__(self, parent: AuthorizingClient, internal: SubResourceClient, name: str) -> None:
        self._parent = parent
        self._internal = internal
        self._name = name

    async def _authorize(self, verb: str, obj: Any) -> None:
        descriptor, key = await self._parent.resolve(obj)
        await self._parent.authorize(verb, descriptor, key, subresource=self._name)

    async def get(self, obj: Any) -> dict[str, Any]:
        await self._authorize(VERB_GET, obj)
        return await self._internal.get(obj)

    async def create(self, obj: Any, body: Any) -> dict[str, Any]:
        await self._authorize(VERB_CREATE, obj)
        return await self._internal.create(obj, body)

    async def update(self, obj: Any, body: Any | None = None) -> dict[str, Any]:
        await self._authorize(VERB_UPDATE, obj)
        return await self._internal.update(obj, body)

    async def patch(self, obj: Any, patch: Patch) -> dict[str, Any]:
        await self._authorize(VERB_PATCH, obj)
        return await self._internal.patch(obj, patch)


def new_client(
    settings: Settings,
    configuration: k8s_client.Configuration,
    *,
    scheme: Scheme | None = None,
) -> AuthorizingClient:
    """Assemble the authorizing client from settings and a loaded configuration."""
    scheme = scheme or new_default_scheme()
    internal = DynamicInternalClient(configuration, scheme)

    mapper: RESTMapper
    if settings.rest_mapping == "discovery":
        mapper = DiscoveryRESTMapper(internal.resource_name)
    else:
        mapper = GuessingRESTMapper()

    authorizer: AuthorizationCheck
    if settings.skip_authorization:
        logger.warning("authorization.skipped", host=settings.host)
        authorizer = AllowAllAuthorizer()
    else:
        reviewer = KubernetesAccessReviewer(
            configuration, request_timeout=settings.access_review_timeout_seconds
        )
        authorizer = Authorizer(reviewer, settings.global_service_account_namespaces)

    return AuthorizingClient(internal, authorizer, mapper)
