"""
Kubernetes access for the API server.

- scheme: Python types / dicts -> kinds
- resources: kinds -> resource descriptors
- access_review: SubjectAccessReview / SelfSubjectAccessReview
- authorization: per-call access decisions
- internal_client: the server's privileged dynamic client
- client: the authorizing client every handler uses
"""

from .authorization import AccessDecision, AllowAllAuthorizer, Authorizer
from .client import AuthorizingClient, new_client
from .interfaces import Client, DeleteAllOfOptions, ListOptions, Patch, PatchType, SubResourceClient, WatchEvent
from .resources import ObjectKey, ResourceDescriptor, resolve
from .scheme import GroupVersionKind, Scheme, new_default_scheme

__all__ = [
    "AccessDecision",
    "AllowAllAuthorizer",
    "Authorizer",
    "AuthorizingClient",
    "Client",
    "DeleteAllOfOptions",
    "GroupVersionKind",
    "ListOptions",
    "ObjectKey",
    "Patch",
    "PatchType",
    "ResourceDescriptor",
    "Scheme",
    "SubResourceClient",
    "WatchEvent",
    "new_client",
    "new_default_scheme",
    "resolve",
]
