from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from kargo_server.exceptions import ForbiddenError, InternalError
from kargo_server.services.k8s.access_review import (
    KubernetesAccessReviewer,
    ResourceAttributes,
    ReviewSubject,
    token_only_configuration,
)
from kargo_server.services.k8s.resources import ObjectKey, ResourceDescriptor
from kargo_server.user import ServiceAccountRef


def _base_configuration() -> client.Configuration:
    cfg = client.Configuration()
    cfg.host = "https://kube.example:6443"
    cfg.ssl_ca_cert = "/etc/ca.crt"
    cfg.cert_file = "/etc/client.crt"
    cfg.key_file = "/etc/client.key"
    cfg.username = "admin"
    cfg.password = "secret"
    cfg.api_key = {"authorization": "server-token"}
    cfg.api_key_prefix = {"authorization": "Bearer"}
    return cfg


class _RecordingAuthApi:
    instances: list["_RecordingAuthApi"] = []
    allowed: Any = True
    error: Exception | None = None

    def __init__(self, api_client: client.ApiClient) -> None:
        self.api_client = api_client
        self.bodies: list[Any] = []
        self.timeouts: list[Any] = []
        _RecordingAuthApi.instances.append(self)

    def _respond(self, body: Any, timeout: Any) -> Any:
        self.bodies.append(body)
        self.timeouts.append(timeout)
        if _RecordingAuthApi.error is not None:
            raise _RecordingAuthApi.error
        return SimpleNamespace(status=SimpleNamespace(allowed=_RecordingAuthApi.allowed))

    def create_subject_access_review(self, body: Any, _request_timeout: Any = None) -> Any:
        return self._respond(body, _request_timeout)

    def create_self_subject_access_review(self, body: Any, _request_timeout: Any = None) -> Any:
        return self._respond(body, _request_timeout)


@pytest.fixture
def auth_api(monkeypatch: pytest.MonkeyPatch) -> type[_RecordingAuthApi]:
    _RecordingAuthApi.instances = []
    _RecordingAuthApi.allowed = True
    _RecordingAuthApi.error = None
    monkeypatch.setattr(client, "AuthorizationV1Api", _RecordingAuthApi)
    return _RecordingAuthApi


ATTRS = ResourceAttributes.for_operation(
    "get",
    ResourceDescriptor("kargo.akuity.io", "v1alpha1", "stages", "status"),
    ObjectKey("demo", "prod"),
)


def test_token_only_configuration_drops_other_credentials() -> None:
    cfg = token_only_configuration(_base_configuration(), "caller-token")

    assert cfg.host == "https://kube.example:6443"
    assert cfg.ssl_ca_cert == "/etc/ca.crt"
    assert cfg.cert_file is None
    assert cfg.key_file is None
    assert cfg.username is None
    assert cfg.password is None
    assert cfg.refresh_api_key_hook is None
    assert cfg.api_key == {"authorization": "caller-token"}
    assert cfg.api_key_prefix == {"authorization": "Bearer"}


def test_resource_attributes_model_omits_empty_fields() -> None:
    model = ResourceAttributes.for_operation("list", ResourceDescriptor("", "v1", "secrets")).to_model()
    assert model.verb == "list"
    assert model.group == ""
    assert model.resource == "secrets"
    assert model.namespace is None
    assert model.name is None
    assert model.subresource is None


@pytest.mark.asyncio
async def test_impersonated_review_uses_service_account_username(auth_api) -> None:
    reviewer = KubernetesAccessReviewer(_base_configuration(), request_timeout=3)

    await reviewer.review(ATTRS, ReviewSubject.service_account(ServiceAccountRef("demo", "admin")))

    [api] = auth_api.instances
    body = api.bodies[0]
    assert isinstance(body, client.V1SubjectAccessReview)
    assert body.spec.user == "system:serviceaccount:demo:admin"
    assert body.spec.resource_attributes.subresource == "status"
    assert body.spec.resource_attributes.namespace == "demo"
    assert api.timeouts == [3]
    assert api.api_client.configuration.api_key == {"authorization": "server-token"}


@pytest.mark.asyncio
async def test_self_review_uses_only_the_caller_token(auth_api) -> None:
    reviewer = KubernetesAccessReviewer(_base_configuration())

    await reviewer.review(ATTRS, ReviewSubject.token("caller-token"))

    [api] = auth_api.instances
    assert isinstance(api.bodies[0], client.V1SelfSubjectAccessReview)
    cfg = api.api_client.configuration
    assert cfg.api_key == {"authorization": "caller-token"}
    assert cfg.cert_file is None
    assert cfg.username is None


@pytest.mark.asyncio
async def test_denied_review_is_forbidden(auth_api) -> None:
    auth_api.allowed = False
    reviewer = KubernetesAccessReviewer(_base_configuration())

    with pytest.raises(ForbiddenError) as excinfo:
        await reviewer.review(ATTRS, ReviewSubject.token("t"))
    assert excinfo.value.message == 'stages.kargo.akuity.io "prod" is forbidden: get is not permitted'


@pytest.mark.asyncio
async def test_api_403_is_forbidden(auth_api) -> None:
    auth_api.error = ApiException(status=403, reason="Forbidden")
    reviewer = KubernetesAccessReviewer(_base_configuration())

    with pytest.raises(ForbiddenError):
        await reviewer.review(ATTRS, ReviewSubject.token("t"))


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ApiException(status=500, reason="Internal"), ConnectionError("refused")])
async def test_other_failures_are_internal(auth_api, error: Exception) -> None:
    auth_api.error = error
    reviewer = KubernetesAccessReviewer(_base_configuration())

    with pytest.raises(InternalError):
        await reviewer.review(ATTRS, ReviewSubject.service_account(ServiceAccountRef("demo", "a")))


@pytest.mark.asyncio
async def test_malformed_response_is_internal(auth_api) -> None:
    auth_api.allowed = None
    reviewer = KubernetesAccessReviewer(_base_configuration())

    with pytest.raises(InternalError):
        await reviewer.review(ATTRS, ReviewSubject.token("t"))


def test_review_subject_repr_hides_token() -> None:
    assert "secret-token" not in repr(ReviewSubject.token("secret-token"))
