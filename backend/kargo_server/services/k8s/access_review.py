from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

import structlog
from kubernetes import client
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException

from kargo_server.exceptions import ForbiddenError, InternalError
from kargo_server.user import ServiceAccountRef

from .resources import ObjectKey, ResourceDescriptor

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceAttributes:
    verb: str
    group: str
    version: str
    resource: str
    subresource: str = ""
    namespace: str = ""
    name: str = ""

    @classmethod
    def for_operation(
        cls,
        verb: str,
        descriptor: ResourceDescriptor,
        key: ObjectKey | None = None,
    ) -> "ResourceAttributes":
        key = key or ObjectKey()
        return cls(
            verb=verb,
            group=descriptor.group,
            version=descriptor.version,
            resource=descriptor.resource,
            subresource=descriptor.subresource,
            namespace=key.namespace,
            name=key.name,
        )

    def to_model(self) -> client.V1ResourceAttributes:
        return client.V1ResourceAttributes(
            verb=self.verb,
            group=self.group,
            version=self.version or None,
            resource=self.resource,
            subresource=self.subresource or None,
            namespace=self.namespace or None,
            name=self.name or None,
        )

    def forbidden(self) -> ForbiddenError:
        return ForbiddenError.for_operation(
            verb=self.verb, group=self.group, resource=self.resource, name=self.name
        )


@dataclass(frozen=True)
class ReviewSubject:
    """Who a review is evaluated for: an explicit user, or the presenter of a token."""

    username: str = ""
    bearer_token: str = field(default="", repr=False)

    @classmethod
    def service_account(cls, ref: ServiceAccountRef) -> "ReviewSubject":
        return cls(username=ref.username)

    @classmethod
    def token(cls, bearer_token: str) -> "ReviewSubject":
        return cls(bearer_token=bearer_token)

    @property
    def is_self(self) -> bool:
        return not self.username


class AccessReviewer(Protocol):
    async def review(self, attributes: ResourceAttributes, subject: ReviewSubject) -> None:
        """Return when allowed; raise ForbiddenError when denied, InternalError otherwise."""


def token_only_configuration(base: client.Configuration, token: str) -> client.Configuration:
    """Copy the connection settings of ``base`` but authenticate only with ``token``.

    Client certificates, basic auth and refresh hooks take precedence over a
    bearer token, so all of them are cleared.
    """
    configuration = client.Configuration()
    configuration.host = base.host
    configuration.ssl_ca_cert = base.ssl_ca_cert
    configuration.verify_ssl = base.verify_ssl
    configuration.proxy = base.proxy
    configuration.no_proxy = getattr(base, "no_proxy", None)
    configuration.proxy_headers = base.proxy_headers
    configuration.safe_chars_for_path_param = base.safe_chars_for_path_param
    configuration.connection_pool_maxsize = base.connection_pool_maxsize
    configuration.assert_hostname = getattr(base, "assert_hostname", None)
    configuration.tls_server_name = getattr(base, "tls_server_name", None)
    configuration.retries = getattr(base, "retries", None)
    configuration.cert_file = None
    configuration.key_file = None
    configuration.username = None
    configuration.password = None
    configuration.refresh_api_key_hook = None
    configuration.api_key = {"authorization": token}
    configuration.api_key_prefix = {"authorization": "Bearer"}
    return configuration


class KubernetesAccessReviewer:
    """Issues SubjectAccessReviews and SelfSubjectAccessReviews.

    Impersonated reviews use the server's own credentials; self reviews use a
    throwaway client carrying nothing but the caller's bearer token.
    """

    def __init__(self, configuration: client.Configuration, *, request_timeout: float = 10.0) -> None:
        self._configuration = configuration
        self._request_timeout = request_timeout
        self._api_client: ApiClient | None = None

    def _privileged_api(self) -> client.AuthorizationV1Api:
        if self._api_client is None:
            self._api_client = ApiClient(self._configuration)
        return client.AuthorizationV1Api(self._api_client)

    def _submit_subject_access_review(self, attributes: ResourceAttributes, username: str) -> bool | None:
        body = client.V1SubjectAccessReview(
            spec=client.V1SubjectAccessReviewSpec(
                user=username,
                resource_attributes=attributes.to_model(),
            )
        )
        response = self._privileged_api().create_subject_access_review(
            body, _request_timeout=self._request_timeout
        )
        return getattr(getattr(response, "status", None), "allowed", None)

    def _submit_self_subject_access_review(self, attributes: ResourceAttributes, token: str) -> bool | None:
        body = client.V1SelfSubjectAccessReview(
            spec=client.V1SelfSubjectAccessReviewSpec(resource_attributes=attributes.to_model())
        )
        api_client = ApiClient(token_only_configuration(self._configuration, token))
        try:
            response = client.AuthorizationV1Api(api_client).create_self_subject_access_review(
                body, _request_timeout=self._request_timeout
            )
        finally:
            api_client.close()
        return getattr(getattr(response, "status", None), "allowed", None)

    async def review(self, attributes: ResourceAttributes, subject: ReviewSubject) -> None:
        path = "self" if subject.is_self else "impersonated"
        try:
            if subject.is_self:
                allowed = await asyncio.to_thread(
                    self._submit_self_subject_access_review, attributes, subject.bearer_token
                )
            else:
                allowed = await asyncio.to_thread(
                    self._submit_subject_access_review, attributes, subject.username
                )
        except ApiException as exc:
            if exc.status == 403:
                # The presented identity may not even create reviews.
                logger.info(
                    "access_review.denied_by_api",
                    path=path,
                    user=subject.username or None,
                    verb=attributes.verb,
                    resource=attributes.resource,
                    group=attributes.group,
                    namespace=attributes.namespace,
                )
                raise attributes.forbidden() from exc
            logger.warning("access_review.error", path=path, status=exc.status, reason=exc.reason)
            raise InternalError(f"error performing access review: {exc.reason}") from exc
        except Exception as exc:
            logger.warning("access_review.error", path=path, error=str(exc))
            raise InternalError(f"error performing access review: {exc}") from exc

        if allowed is None:
            raise InternalError("unexpected access review response structure")
        if not allowed:
            raise attributes.forbidden()

    def close(self) -> None:
        if self._api_client is not None:
            self._api_client.close()
            self._api_client = None
