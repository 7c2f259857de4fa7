"""
The server's own (privileged) connection to the cluster.

Thin async wrapper around ``kubernetes.dynamic.DynamicClient``: every blocking
call runs in a worker thread and every result is a plain dict.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Mapping
from typing import Any

import structlog
from kubernetes import client, watch
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError

from kargo_server.exceptions import (
    AlreadyExistsError,
    AppException,
    BadRequestError,
    ForbiddenError,
    KubernetesApiError,
    NotFoundError,
    NotRegisteredError,
)

from .interfaces import Client, DeleteAllOfOptions, ListOptions, Patch, SubResourceClient, WatchEvent
from .resources import ObjectKey
from .scheme import Scheme

logger = structlog.get_logger(__name__)

_END = object()


def translate_api_error(exc: Exception) -> AppException:
    """Map a client exception onto the application's error types."""
    if isinstance(exc, ResourceNotFoundError):
        return NotRegisteredError(str(exc))
    status = getattr(exc, "status", None)
    reason = getattr(exc, "reason", None)
    message = exc.summary() if isinstance(exc, DynamicApiError) else f"{status} {reason}"
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        if reason == "AlreadyExists" or "already exists" in message:
            return AlreadyExistsError(message)
        return KubernetesApiError(message, status_code=409, reason=reason)
    if status == 403:
        return ForbiddenError(message)
    if status in (400, 422):
        return BadRequestError(message)
    return KubernetesApiError(message, status_code=status or 502, reason=reason)


def _metadata(body: Mapping[str, Any]) -> Mapping[str, Any]:
    return body.get("metadata") or {}


class WatchStream:
    """Async iterator over a blocking dynamic-client watch.

    ``stop()`` ends the stream; cancelling the task consuming it stops it too.
    """

    def __init__(self, events: Iterator[dict[str, Any]], watcher: watch.Watch, item_api_version: str, item_kind: str) -> None:
        self._events = events
        self._watcher = watcher
        self._api_version = item_api_version
        self._kind = item_kind
        self._stopped = False

    def __aiter__(self) -> "WatchStream":
        return self

    async def __anext__(self) -> WatchEvent:
        if self._stopped:
            raise StopAsyncIteration
        try:
            event = await asyncio.to_thread(next, self._events, _END)
        except asyncio.CancelledError:
            self.stop()
            raise
        except (ApiException, DynamicApiError) as exc:
            self.stop()
            raise translate_api_error(exc) from exc
        if event is _END:
            self._stopped = True
            raise StopAsyncIteration
        raw = event.get("raw_object")
        if raw is None:
            obj = event.get("object")
            raw = obj.to_dict() if hasattr(obj, "to_dict") else dict(obj or {})
        raw.setdefault("apiVersion", self._api_version)
        raw.setdefault("kind", self._kind)
        return WatchEvent(type=event.get("type", ""), object=raw)

    def stop(self) -> None:
        self._stopped = True
        self._watcher.stop()


class DynamicInternalClient(Client):
    """Unauthorized client used after an access decision allowed an operation."""

    def __init__(self, configuration: client.Configuration, scheme: Scheme) -> None:
        self._configuration = configuration
        self._scheme = scheme
        self._serializer = ApiClient()
        self._dynamic: DynamicClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def scheme(self) -> Scheme:
        return self._scheme

    async def _ensure_client(self) -> DynamicClient:
        if self._dynamic is not None:
            return self._dynamic

        async with self._client_lock:
            if self._dynamic is not None:
                return self._dynamic

            def _build() -> DynamicClient:
                return DynamicClient(ApiClient(self._configuration))

            try:
                self._dynamic = await asyncio.to_thread(_build)
            except (ApiException, DynamicApiError) as exc:
                logger.warning("kubernetes.discovery_failed", error=str(exc))
                raise translate_api_error(exc) from exc
            logger.info("kubernetes.dynamic_client_ready", host=self._configuration.host)
            return self._dynamic

    async def _resource(self, obj: Any) -> Any:
        gvk = self._scheme.object_kind(obj).item_kind()
        dynamic = await self._ensure_client()
        try:
            return await asyncio.to_thread(dynamic.resources.get, api_version=gvk.api_version, kind=gvk.kind)
        except ResourceNotFoundError as exc:
            raise NotRegisteredError(
                f'the server has no resource for kind "{gvk.kind}" in "{gvk.api_version}"'
            ) from exc

    async def resource_name(self, api_version: str, kind: str) -> str:
        """Plural resource name the server publishes for a kind."""
        dynamic = await self._ensure_client()
        try:
            found = await asyncio.to_thread(dynamic.resources.get, api_version=api_version, kind=kind)
        except ResourceNotFoundError as exc:
            raise NotRegisteredError(f'the server has no resource for kind "{kind}" in "{api_version}"') from exc
        return found.name

    def _body(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, Mapping):
            body = dict(obj)
        else:
            body = self._serializer.sanitize_for_serialization(obj)
        gvk = self._scheme.object_kind(obj)
        body.setdefault("apiVersion", gvk.api_version)
        body.setdefault("kind", gvk.kind)
        return body

    async def _call(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (ApiException, DynamicApiError) as exc:
            raise translate_api_error(exc) from exc

    @staticmethod
    def _to_dict(result: Any) -> dict[str, Any]:
        if result is None:
            return {}
        if hasattr(result, "to_dict"):
            return result.to_dict()
        return dict(result)

    async def get(self, obj: Any, key: ObjectKey) -> dict[str, Any]:
        resource = await self._resource(obj)
        result = await self._call(resource.get, name=key.name, namespace=key.namespace or None)
        return self._to_dict(result)

    async def list(self, obj_list: Any, options: ListOptions | None = None) -> dict[str, Any]:
        options = options or ListOptions()
        resource = await self._resource(obj_list)
        result = self._to_dict(
            await self._call(resource.get, namespace=options.namespace or None, **options.to_query())
        )
        item_gvk = self._scheme.object_kind(obj_list).item_kind()
        for item in result.get("items") or []:
            item.setdefault("apiVersion", item_gvk.api_version)
            item.setdefault("kind", item_gvk.kind)
        return result

    async def create(self, obj: Any) -> dict[str, Any]:
        resource = await self._resource(obj)
        body = self._body(obj)
        result = await self._call(resource.create, body=body, namespace=_metadata(body).get("namespace"))
        return self._to_dict(result)

    async def update(self, obj: Any) -> dict[str, Any]:
        resource = await self._resource(obj)
        body = self._body(obj)
        result = await self._call(resource.replace, body=body, namespace=_metadata(body).get("namespace"))
        return self._to_dict(result)

    async def patch(self, obj: Any, patch: Patch) -> dict[str, Any]:
        resource = await self._resource(obj)
        key = ObjectKey.from_object(obj)
        result = await self._call(
            resource.patch,
            body=patch.body,
            name=key.name,
            namespace=key.namespace or None,
            content_type=patch.type.value,
        )
        return self._to_dict(result)

    async def delete(self, obj: Any, *, propagation_policy: str | None = None) -> None:
        resource = await self._resource(obj)
        key = ObjectKey.from_object(obj)
        kwargs: dict[str, Any] = {}
        if propagation_policy:
            kwargs["propagation_policy"] = propagation_policy
        await self._call(resource.delete, name=key.name, namespace=key.namespace or None, **kwargs)

    async def delete_all_of(self, obj: Any, options: DeleteAllOfOptions | None = None) -> None:
        options = options or DeleteAllOfOptions()
        resource = await self._resource(obj)
        dynamic = await self._ensure_client()
        # DynamicClient.delete refuses a collection delete without selectors.
        path = resource.path(namespace=options.namespace or None)
        await self._call(dynamic.request, "delete", path, **options.to_query())

    async def watch(self, obj_list: Any, options: ListOptions | None = None) -> WatchStream:
        options = options or ListOptions()
        resource = await self._resource(obj_list)
        dynamic = await self._ensure_client()
        watcher = watch.Watch()
        events = dynamic.watch(
            resource,
            namespace=options.namespace or None,
            label_selector=options.label_selector,
            field_selector=options.field_selector,
            resource_version=options.resource_version,
            timeout=options.timeout_seconds,
            watcher=watcher,
        )
        item_gvk = self._scheme.object_kind(obj_list).item_kind()
        return WatchStream(events, watcher, item_gvk.api_version, item_gvk.kind)

    def sub_resource(self, name: str) -> SubResourceClient:
        return _DynamicSubResourceClient(self, name)


class _DynamicSubResourceClient(SubResourceClient):
    def __init__(self, parent: DynamicInternalClient, name: str) -> None:
        self._parent = parent
        self._name = name

    async def _subresource(self, obj: Any) -> Any:
        resource = await self._parent._resource(obj)
        sub = resource.subresources.get(self._name)
        if sub is None:
            raise NotFoundError(f'{resource.name} has no subresource "{self._name}"')
        return sub

    async def get(self, obj: Any) -> dict[str, Any]:
        sub = await self._subresource(obj)
        key = ObjectKey.from_object(obj)
        result = await self._parent._call(sub.get, name=key.name, namespace=key.namespace or None)
        return self._parent._to_dict(result)

    async def create(self, obj: Any, body: Any) -> dict[str, Any]:
        sub = await self._subresource(obj)
        key = ObjectKey.from_object(obj)
        payload = body if isinstance(body, Mapping) else self._parent._serializer.sanitize_for_serialization(body)
        result = await self._parent._call(sub.create, body=payload, name=key.name, namespace=key.namespace or None)
        return self._parent._to_dict(result)

    async def update(self, obj: Any, body: Any | None = None) -> dict[str, Any]:
        sub = await self._subresource(obj)
        key = ObjectKey.from_object(obj)
        payload = self._parent._body(obj) if body is None else (
            body if isinstance(body, Mapping) else self._parent._serializer.sanitize_for_serialization(body)
        )
        result = await self._parent._call(sub.replace, body=payload, name=key.name, namespace=key.namespace or None)
        return self._parent._to_dict(result)

    async def patch(self, obj: Any, patch: Patch) -> dict[str, Any]:
        sub = await self._subresource(obj)
        key = ObjectKey.from_object(obj)
        result = await self._parent._call(
            sub.patch,
            body=patch.body,
            name=key.name,
            namespace=key.namespace or None,
            content_type=patch.type.value,
        )
        return self._parent._to_dict(result)
