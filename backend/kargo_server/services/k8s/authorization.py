"""
Per-call authorization decisions.

Nothing here is cached: every operation is reviewed again because a caller's
permissions may change between two calls of the same session.
"""

from __future__ import annotations

import enum
from collections.abc import Iterator, Sequence

import structlog

from kargo_server.exceptions import AppException, ForbiddenError, InternalError, NotAllowedError
from kargo_server.user import CallerIdentity, ServiceAccountRef, caller_from_context

from .access_review import AccessReviewer, ResourceAttributes, ReviewSubject
from .resources import ObjectKey, ResourceDescriptor

logger = structlog.get_logger(__name__)


class AccessDecision(str, enum.Enum):
    ALLOWED = "allowed"
    FORBIDDEN = "forbidden"
    ERROR = "error"

    @classmethod
    def from_error(cls, error: Exception | None) -> "AccessDecision":
        if error is None:
            return cls.ALLOWED
        if isinstance(error, (ForbiddenError, NotAllowedError)):
            return cls.FORBIDDEN
        return cls.ERROR


class Authorizer:
    """Decides whether the caller bound to the current context may act.

    Callers carrying a ``sub`` claim are first reviewed as each ServiceAccount
    they are mapped to, the object's own namespace ahead of the global
    namespaces; a review of the caller's own bearer token is the last resort.
    """

    def __init__(self, reviewer: AccessReviewer, global_service_account_namespaces: Sequence[str] = ()) -> None:
        self._reviewer = reviewer
        self._global_namespaces = tuple(global_service_account_namespaces)

    def candidate_namespaces(self, key: ObjectKey | None) -> list[str]:
        # Cluster-scoped targets are only ever checked against the global namespaces.
        if key is not None and key.namespace:
            return [key.namespace, *(ns for ns in self._global_namespaces if ns != key.namespace)]
        return list(self._global_namespaces)

    def _candidates(self, identity: CallerIdentity, key: ObjectKey | None) -> Iterator[ServiceAccountRef]:
        for namespace in self.candidate_namespaces(key):
            yield from identity.service_accounts_in(namespace)

    async def authorize(
        self,
        verb: str,
        descriptor: ResourceDescriptor,
        key: ObjectKey | None = None,
    ) -> None:
        """Raise NotAllowedError, ForbiddenError or InternalError unless allowed."""
        identity = caller_from_context()
        if identity is None:
            logger.info("authorization.no_identity", verb=verb, resource=descriptor.group_resource)
            raise NotAllowedError()

        if identity.is_admin:
            return

        attributes = ResourceAttributes.for_operation(verb, descriptor, key)

        if identity.has_subject_claim:
            for ref in self._candidates(identity, key):
                try:
                    await self._reviewer.review(attributes, ReviewSubject.service_account(ref))
                except ForbiddenError:
                    continue
                except InternalError:
                    raise
                except AppException as exc:
                    raise InternalError(exc.message) from exc
                except Exception as exc:
                    raise InternalError(f"error performing access review: {exc}") from exc
                logger.debug(
                    "authorization.allowed",
                    path="impersonated",
                    service_account=ref.username,
                    verb=verb,
                    resource=descriptor.group_resource,
                    namespace=attributes.namespace,
                    name=attributes.name,
                )
                return

        if not identity.bearer_token:
            # Token-exchange callers carry no cluster credential to review.
            logger.info(
                "authorization.denied",
                verb=verb,
                resource=descriptor.group_resource,
                subresource=descriptor.subresource,
                namespace=attributes.namespace,
                name=attributes.name,
                reason="no_bearer_token",
            )
            raise attributes.forbidden()

        try:
            await self._reviewer.review(attributes, ReviewSubject.token(identity.bearer_token))
        except ForbiddenError:
            logger.info(
                "authorization.denied",
                verb=verb,
                resource=descriptor.group_resource,
                subresource=descriptor.subresource,
                namespace=attributes.namespace,
                name=attributes.name,
            )
            raise
        except InternalError:
            raise
        except AppException as exc:
            raise InternalError(exc.message) from exc
        except Exception as exc:
            raise InternalError(f"error performing access review: {exc}") from exc
        logger.debug(
            "authorization.allowed",
            path="self",
            verb=verb,
            resource=descriptor.group_resource,
            namespace=attributes.namespace,
            name=attributes.name,
        )


class AllowAllAuthorizer:
    """Used when authorization is skipped; only reachable on loopback listeners."""

    async def authorize(
        self,
        verb: str,
        descriptor: ResourceDescriptor,
        key: ObjectKey | None = None,
    ) -> None:
        return None
