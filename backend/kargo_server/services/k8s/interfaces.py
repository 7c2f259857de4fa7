from __future__ import annotations

import abc
import enum
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .resources import ObjectKey
from .scheme import Scheme


@dataclass(frozen=True)
class ListOptions:
    namespace: str = ""
    label_selector: str | None = None
    field_selector: str | None = None
    limit: int | None = None
    continue_token: str | None = None
    resource_version: str | None = None
    timeout_seconds: int | None = None

    def to_query(self) -> dict[str, Any]:
        params = {
            "label_selector": self.label_selector,
            "field_selector": self.field_selector,
            "limit": self.limit,
            "_continue": self.continue_token,
            "resource_version": self.resource_version,
            "timeout_seconds": self.timeout_seconds,
        }
        return {k: v for k, v in params.items() if v is not None}


@dataclass(frozen=True)
class DeleteAllOfOptions:
    namespace: str = ""
    label_selector: str | None = None
    field_selector: str | None = None
    propagation_policy: str | None = None

    def to_query(self) -> dict[str, Any]:
        params = {
            "label_selector": self.label_selector,
            "field_selector": self.field_selector,
            "propagation_policy": self.propagation_policy,
        }
        return {k: v for k, v in params.items() if v is not None}


class PatchType(str, enum.Enum):
    MERGE = "application/merge-patch+json"
    STRATEGIC_MERGE = "application/strategic-merge-patch+json"
    JSON = "application/json-patch+json"


@dataclass(frozen=True)
class Patch:
    body: Any
    type: PatchType = PatchType.MERGE


@dataclass(frozen=True)
class WatchEvent:
    type: str
    object: dict[str, Any]


class SubResourceClient(abc.ABC):
    """Operations on one subresource (``status``, ``scale``...) of an object."""

    @abc.abstractmethod
    async def get(self, obj: Any) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def create(self, obj: Any, body: Any) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def update(self, obj: Any, body: Any | None = None) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def patch(self, obj: Any, patch: Patch) -> dict[str, Any]: ...


class Client(abc.ABC):
    """Verbs on cluster objects.

    ``obj`` identifies the kind: a ``kubernetes.client`` model class or
    instance, or a dict carrying ``apiVersion``/``kind`` (and ``metadata``
    where the verb targets one object). Results are plain dicts.
    """

    @property
    @abc.abstractmethod
    def scheme(self) -> Scheme: ...

    @abc.abstractmethod
    async def get(self, obj: Any, key: ObjectKey) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def list(self, obj_list: Any, options: ListOptions | None = None) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def create(self, obj: Any) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def update(self, obj: Any) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def patch(self, obj: Any, patch: Patch) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def delete(self, obj: Any, *, propagation_policy: str | None = None) -> None: ...

    @abc.abstractmethod
    async def delete_all_of(self, obj: Any, options: DeleteAllOfOptions | None = None) -> None: ...

    @abc.abstractmethod
    async def watch(self, obj_list: Any, options: ListOptions | None = None) -> AsyncIterator[WatchEvent]:
        """Open a watch; the returned iterator yields events until stopped."""

    @abc.abstractmethod
    def sub_resource(self, name: str) -> SubResourceClient: ...

    def status(self) -> SubResourceClient:
        return self.sub_resource("status")
