"""In-memory stand-ins for the cluster connection and the access-review backend."""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from typing import Any

from kubernetes.client import ApiClient

from kargo_server.exceptions import AlreadyExistsError, NotFoundError
from kargo_server.services.k8s.access_review import ResourceAttributes, ReviewSubject
from kargo_server.services.k8s.interfaces import (
    Client,
    DeleteAllOfOptions,
    ListOptions,
    Patch,
    SubResourceClient,
    WatchEvent,
)
from kargo_server.services.k8s.resources import ObjectKey
from kargo_server.services.k8s.scheme import Scheme, new_default_scheme

_serializer = ApiClient()


class FakeClient(Client):
    """Dict-backed cluster. Records every delegated call in ``calls``."""

    def __init__(self, scheme: Scheme | None = None, objects: list[Any] | None = None) -> None:
        self._scheme = scheme or new_default_scheme()
        self.store: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.watch_events: list[WatchEvent] = []
        self._version = 0
        for obj in objects or []:
            self._put(self._as_dict(obj))

    @property
    def scheme(self) -> Scheme:
        return self._scheme

    def _as_dict(self, obj: Any) -> dict[str, Any]:
        body = copy.deepcopy(dict(obj)) if isinstance(obj, Mapping) else _serializer.sanitize_for_serialization(obj)
        gvk = self._scheme.object_kind(obj)
        body.setdefault("apiVersion", gvk.api_version)
        body.setdefault("kind", gvk.kind)
        body.setdefault("metadata", {})
        return body

    def _item_id(self, obj: Any) -> tuple[str, str]:
        gvk = self._scheme.object_kind(obj).item_kind()
        return gvk.api_version, gvk.kind

    def _key_of(self, body: Mapping[str, Any]) -> tuple[str, str, str, str]:
        meta = body.get("metadata") or {}
        return body["apiVersion"], body["kind"], meta.get("namespace") or "", meta.get("name") or ""

    def _put(self, body: dict[str, Any]) -> dict[str, Any]:
        self._version += 1
        body["metadata"]["resourceVersion"] = str(self._version)
        self.store[self._key_of(body)] = body
        return copy.deepcopy(body)

    def find(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        for (_, k, ns, n), body in self.store.items():
            if (k, ns, n) == (kind, namespace, name):
                return copy.deepcopy(body)
        return None

    async def get(self, obj: Any, key: ObjectKey) -> dict[str, Any]:
        self.calls.append(("get", key))
        api_version, kind = self._item_id(obj)
        found = self.store.get((api_version, kind, key.namespace, key.name))
        if found is None:
            raise NotFoundError(f'{kind} "{key.name}" not found')
        return copy.deepcopy(found)

    async def list(self, obj_list: Any, options: ListOptions | None = None) -> dict[str, Any]:
        options = options or ListOptions()
        self.calls.append(("list", options))
        api_version, kind = self._item_id(obj_list)
        items = [
            copy.deepcopy(body)
            for (av, k, ns, _), body in sorted(self.store.items())
            if av == api_version and k == kind and (not options.namespace or ns == options.namespace)
        ]
        return {"apiVersion": api_version, "kind": f"{kind}List", "items": items}

    async def create(self, obj: Any) -> dict[str, Any]:
        body = self._as_dict(obj)
        self.calls.append(("create", self._key_of(body)))
        if self._key_of(body) in self.store:
            raise AlreadyExistsError(f'{body["kind"]} "{body["metadata"].get("name")}" already exists')
        return self._put(body)

    async def update(self, obj: Any) -> dict[str, Any]:
        body = self._as_dict(obj)
        self.calls.append(("update", self._key_of(body)))
        if self._key_of(body) not in self.store:
            raise NotFoundError(f'{body["kind"]} "{body["metadata"].get("name")}" not found')
        return self._put(body)

    async def patch(self, obj: Any, patch: Patch) -> dict[str, Any]:
        body = self._as_dict(obj)
        key = self._key_of(body)
        self.calls.append(("patch", key))
        current = self.store.get(key)
        if current is None:
            raise NotFoundError(f'{body["kind"]} not found')
        merged = copy.deepcopy(current)
        for field, value in (patch.body or {}).items():
            if isinstance(value, Mapping) and isinstance(merged.get(field), dict):
                merged[field].update(value)
            else:
                merged[field] = value
        return self._put(merged)

    async def delete(self, obj: Any, *, propagation_policy: str | None = None) -> None:
        body = self._as_dict(obj)
        key = self._key_of(body)
        self.calls.append(("delete", key))
        if self.store.pop(key, None) is None:
            raise NotFoundError(f'{body["kind"]} not found')

    async def delete_all_of(self, obj: Any, options: DeleteAllOfOptions | None = None) -> None:
        options = options or DeleteAllOfOptions()
        self.calls.append(("delete_all_of", options))
        api_version, kind = self._item_id(obj)
        for key in [k for k in self.store if k[:2] == (api_version, kind) and (not options.namespace or k[2] == options.namespace)]:
            del self.store[key]

    async def watch(self, obj_list: Any, options: ListOptions | None = None):
        self.calls.append(("watch", options))
        events = list(self.watch_events)

        async def _stream():
            for event in events:
                yield event

        return _stream()

    def sub_resource(self, name: str) -> SubResourceClient:
        return _FakeSubResourceClient(self, name)


class _FakeSubResourceClient(SubResourceClient):
    def __init__(self, parent: FakeClient, name: str) -> None:
        self._parent = parent
        self._name = name

    def _current(self, obj: Any) -> tuple[tuple[str, str, str, str], dict[str, Any]]:
        body = self._parent._as_dict(obj)
        key = self._parent._key_of(body)
        current = self._parent.store.get(key)
        if current is None:
            raise NotFoundError("not found")
        return key, current

    async def get(self, obj: Any) -> dict[str, Any]:
        self._parent.calls.append((f"{self._name}.get", obj))
        _, current = self._current(obj)
        return copy.deepcopy(current.get(self._name) or {})

    async def create(self, obj: Any, body: Any) -> dict[str, Any]:
        self._parent.calls.append((f"{self._name}.create", obj))
        return dict(body)

    async def update(self, obj: Any, body: Any | None = None) -> dict[str, Any]:
        self._parent.calls.append((f"{self._name}.update", obj))
        _, current = self._current(obj)
        source = self._parent._as_dict(obj) if body is None else dict(body)
        current[self._name] = copy.deepcopy(source.get(self._name, source))
        return self._parent._put(current)

    async def patch(self, obj: Any, patch: Patch) -> dict[str, Any]:
        self._parent.calls.append((f"{self._name}.patch", obj))
        _, current = self._current(obj)
        current.setdefault(self._name, {}).update((patch.body or {}).get(self._name, {}))
        return self._parent._put(current)


Outcome = Exception | None


class FakeAccessReviewer:
    """Scripted reviewer.

    ``outcomes`` maps a service account username, or ``"self"`` for the
    caller's own token, to the exception the review should raise (``None``
    means allowed). Unlisted subjects are denied with ``default``.
    """

    def __init__(
        self,
        outcomes: Mapping[str, Outcome] | None = None,
        *,
        default: Callable[[ResourceAttributes], Exception] | None = None,
    ) -> None:
        self.outcomes = dict(outcomes or {})
        self._default = default or (lambda attrs: attrs.forbidden())
        self.calls: list[tuple[ResourceAttributes, ReviewSubject]] = []

    @property
    def subjects(self) -> list[str]:
        return ["self" if s.is_self else s.username for _, s in self.calls]

    async def review(self, attributes: ResourceAttributes, subject: ReviewSubject) -> None:
        self.calls.append((attributes, subject))
        name = "self" if subject.is_self else subject.username
        if name in self.outcomes:
            outcome = self.outcomes[name]
        else:
            outcome = self._default(attributes)
        if outcome is not None:
            raise outcome
