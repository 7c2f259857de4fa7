from __future__ import annotations

import asyncio

import pytest
from kubernetes import client

from fakes import FakeAccessReviewer, FakeClient
from kargo_server.config import Settings
from kargo_server.exceptions import ForbiddenError, NotAllowedError
from kargo_server.services.k8s.authorization import AllowAllAuthorizer, Authorizer
from kargo_server.services.k8s.client import AuthorizingClient, new_client
from kargo_server.services.k8s.interfaces import DeleteAllOfOptions, ListOptions, Patch, WatchEvent
from kargo_server.services.k8s.resources import DiscoveryRESTMapper, GuessingRESTMapper, ObjectKey, ResourceDescriptor
from kargo_server.user import CallerIdentity, caller_context

API_VERSION = "kargo.akuity.io/v1alpha1"


def _stage(name: str = "prod", namespace: str = "demo") -> dict:
    return {"apiVersion": API_VERSION, "kind": "Stage", "metadata": {"namespace": namespace, "name": name}, "spec": {}}


STAGE_LIST = {"apiVersion": API_VERSION, "kind": "StageList"}
CALLER = CallerIdentity(bearer_token="caller-token")


def _client(allowed: bool = True, objects=None) -> tuple[AuthorizingClient, FakeClient, FakeAccessReviewer]:
    internal = FakeClient(objects=objects if objects is not None else [_stage()])
    reviewer = FakeAccessReviewer({"self": None} if allowed else {})
    return AuthorizingClient(internal, Authorizer(reviewer)), internal, reviewer


@pytest.mark.asyncio
async def test_get_is_reviewed_with_the_requested_key() -> None:
    kube, internal, reviewer = _client()

    with caller_context(CALLER):
        obj = await kube.get({"apiVersion": API_VERSION, "kind": "Stage"}, ObjectKey("demo", "prod"))

    assert obj["metadata"]["name"] == "prod"
    attrs = reviewer.calls[0][0]
    assert (attrs.verb, attrs.resource, attrs.namespace, attrs.name) == ("get", "stages", "demo", "prod")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "verb,call",
    [
        ("create", lambda kube: kube.create(_stage("uat"))),
        ("update", lambda kube: kube.update(_stage())),
        ("patch", lambda kube: kube.patch(_stage(), Patch({"spec": {"shard": "a"}}))),
        ("delete", lambda kube: kube.delete(_stage())),
    ],
)
async def test_object_verbs_are_reviewed_then_delegated(verb: str, call) -> None:
    kube, internal, reviewer = _client()

    with caller_context(CALLER):
        await call(kube)

    attrs = reviewer.calls[0][0]
    assert attrs.verb == verb
    assert attrs.group == "kargo.akuity.io"
    assert attrs.namespace == "demo"
    assert [c[0] for c in internal.calls] == [verb]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "call",
    [
        lambda kube: kube.get({"apiVersion": API_VERSION, "kind": "Stage"}, ObjectKey("demo", "prod")),
        lambda kube: kube.list(STAGE_LIST, ListOptions(namespace="demo")),
        lambda kube: kube.create(_stage("uat")),
        lambda kube: kube.update(_stage()),
        lambda kube: kube.patch(_stage(), Patch({"spec": {"shard": "a"}})),
        lambda kube: kube.delete(_stage()),
        lambda kube: kube.delete_all_of(_stage(), DeleteAllOfOptions(namespace="demo")),
        lambda kube: kube.watch(STAGE_LIST, ListOptions(namespace="demo")),
        lambda kube: kube.status().update(_stage()),
    ],
)
async def test_denied_operations_have_no_side_effects(call) -> None:
    kube, internal, _ = _client(allowed=False)
    before = dict(internal.store)

    with caller_context(CALLER):
        with pytest.raises(ForbiddenError):
            await call(kube)

    assert internal.calls == []
    assert internal.store == before


@pytest.mark.asyncio
async def test_operations_without_identity_are_not_allowed() -> None:
    kube, internal, reviewer = _client()

    with pytest.raises(NotAllowedError):
        await kube.list(STAGE_LIST, ListOptions(namespace="demo"))

    assert reviewer.calls == []
    assert internal.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "verb,call",
    [
        ("list", lambda kube: kube.list(STAGE_LIST, ListOptions(namespace="demo"))),
        ("deletecollection", lambda kube: kube.delete_all_of(STAGE_LIST, DeleteAllOfOptions(namespace="demo"))),
        ("watch", lambda kube: kube.watch(STAGE_LIST, ListOptions(namespace="demo"))),
    ],
)
async def test_collection_verbs_use_namespace_only_key(verb: str, call) -> None:
    kube, _, reviewer = _client()

    with caller_context(CALLER):
        await call(kube)

    attrs = reviewer.calls[0][0]
    assert (attrs.verb, attrs.resource, attrs.namespace, attrs.name) == (verb, "stages", "demo", "")


@pytest.mark.asyncio
async def test_list_returns_items_from_privileged_connection() -> None:
    kube, _, _ = _client(objects=[_stage("a"), _stage("b"), _stage("c", namespace="other")])

    with caller_context(CALLER):
        listed = await kube.list(STAGE_LIST, ListOptions(namespace="demo"))

    assert [i["metadata"]["name"] for i in listed["items"]] == ["a", "b"]


@pytest.mark.asyncio
async def test_watch_is_authorized_once_up_front() -> None:
    kube, internal, reviewer = _client()
    internal.watch_events = [WatchEvent("ADDED", _stage("a")), WatchEvent("MODIFIED", _stage("a"))]

    with caller_context(CALLER):
        stream = await kube.watch(STAGE_LIST, ListOptions(namespace="demo"))
        events = [event async for event in stream]

    assert [e.type for e in events] == ["ADDED", "MODIFIED"]
    assert len(reviewer.calls) == 1


@pytest.mark.asyncio
async def test_subresource_verbs_carry_the_subresource() -> None:
    kube, internal, reviewer = _client()

    with caller_context(CALLER):
        await kube.status().patch(_stage(), Patch({"status": {"phase": "Healthy"}}))
        await kube.sub_resource("status").get(_stage())

    assert [(a.verb, a.subresource, a.name) for a, _ in reviewer.calls] == [
        ("patch", "status", "prod"),
        ("get", "status", "prod"),
    ]
    assert internal.find("Stage", "demo", "prod")["status"] == {"phase": "Healthy"}


@pytest.mark.asyncio
async def test_typed_objects_resolve_to_core_resources() -> None:
    kube, internal, reviewer = _client(objects=[])
    sa = client.V1ServiceAccount(metadata=client.V1ObjectMeta(namespace="demo", name="bot"))

    with caller_context(CALLER):
        await kube.create(sa)

    attrs = reviewer.calls[0][0]
    assert (attrs.group, attrs.version, attrs.resource, attrs.name) == ("", "v1", "serviceaccounts", "bot")
    assert internal.find("ServiceAccount", "demo", "bot") is not None


@pytest.mark.asyncio
async def test_authorize_checks_without_delegating() -> None:
    kube, internal, reviewer = _client()
    descriptor = ResourceDescriptor("kargo.akuity.io", "v1alpha1", "stages")

    with caller_context(CALLER):
        await kube.authorize("promote", descriptor, ObjectKey("demo", "prod"))
        await kube.authorize("update", descriptor, ObjectKey("demo", "prod"), subresource="status")

    assert [(a.verb, a.subresource) for a, _ in reviewer.calls] == [("promote", ""), ("update", "status")]
    assert internal.calls == []


@pytest.mark.asyncio
async def test_skip_authorization_uses_privileged_connection_directly() -> None:
    internal = FakeClient(objects=[_stage()])
    kube = AuthorizingClient(internal, AllowAllAuthorizer())

    await kube.delete(_stage())

    assert internal.find("Stage", "demo", "prod") is None


def test_new_client_honours_settings() -> None:
    configuration = client.Configuration()
    configuration.host = "https://kube.example"

    skipped = new_client(Settings(host="127.0.0.1", skip_authorization=True), configuration)
    assert isinstance(skipped._authorizer, AllowAllAuthorizer)
    assert isinstance(skipped._mapper, GuessingRESTMapper)

    reviewed = new_client(
        Settings(global_service_account_namespaces="kargo-global", rest_mapping="discovery"),
        configuration,
    )
    assert isinstance(reviewed._authorizer, Authorizer)
    assert isinstance(reviewed._mapper, DiscoveryRESTMapper)
    assert reviewed._authorizer.candidate_namespaces(ObjectKey("demo", "x")) == ["demo", "kargo-global"]


class _BlockingReviewer:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.released = asyncio.Event()

    async def review(self, attributes, subject) -> None:
        self.started.set()
        await self.released.wait()


@pytest.mark.asyncio
async def test_cancelling_the_call_aborts_the_review() -> None:
    internal = FakeClient(objects=[_stage()])
    reviewer = _BlockingReviewer()
    kube = AuthorizingClient(internal, Authorizer(reviewer))

    with caller_context(CALLER):
        task = asyncio.create_task(kube.get({"apiVersion": API_VERSION, "kind": "Stage"}, ObjectKey("demo", "prod")))
    await reviewer.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert internal.calls == []
