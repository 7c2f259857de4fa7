"""
Caller identity bound to a single inbound call.

The identity is produced by the authentication layer in front of the API and
carried through the call with a ContextVar, so concurrent requests never see
each other's identity.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

SUBJECT_CLAIM = "sub"


@dataclass(frozen=True, order=True)
class ServiceAccountRef:
    namespace: str
    name: str

    @property
    def username(self) -> str:
        return f"system:serviceaccount:{self.namespace}:{self.name}"


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated context of one caller."""

    is_admin: bool = False
    claims: Mapping[str, Any] = field(default_factory=dict)
    service_accounts_by_namespace: Mapping[str, frozenset[ServiceAccountRef]] = field(default_factory=dict)
    bearer_token: str = field(default="", repr=False)
    username: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "claims", MappingProxyType(dict(self.claims)))
        object.__setattr__(
            self,
            "service_accounts_by_namespace",
            MappingProxyType(
                {ns: frozenset(refs) for ns, refs in self.service_accounts_by_namespace.items()}
            ),
        )

    @classmethod
    def with_service_accounts(
        cls,
        refs: Iterable[ServiceAccountRef],
        **kwargs: Any,
    ) -> "CallerIdentity":
        grouped: dict[str, set[ServiceAccountRef]] = {}
        for ref in refs:
            grouped.setdefault(ref.namespace, set()).add(ref)
        return cls(
            service_accounts_by_namespace={ns: frozenset(v) for ns, v in grouped.items()},
            **kwargs,
        )

    @property
    def has_subject_claim(self) -> bool:
        return SUBJECT_CLAIM in self.claims

    def service_accounts_in(self, namespace: str) -> frozenset[ServiceAccountRef]:
        return self.service_accounts_by_namespace.get(namespace, frozenset())


_caller_var: ContextVar[CallerIdentity | None] = ContextVar("caller_identity", default=None)


@contextmanager
def caller_context(identity: CallerIdentity | None) -> Iterator[CallerIdentity | None]:
    """Bind ``identity`` to the current task for the duration of the block."""
    token = _caller_var.set(identity)
    try:
        yield identity
    finally:
        _caller_var.reset(token)


def caller_from_context() -> CallerIdentity | None:
    return _caller_var.get()
