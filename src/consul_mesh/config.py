"""Configuration and record types for writing health state into Consul.

These dataclasses are captured once from the agent configuration and handed
to the namespace filter, the name translator and the registry client so that
none of them read process wide state at call time.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional

WILDCARD_NAMESPACE = "*"


class CheckStatus(Enum):
    """Health states written by the sync handler."""

    PASSING = "passing"
    CRITICAL = "critical"
    # Only ever read back from checks managed by someone else.
    WARNING = "warning"


@dataclass(frozen=True)
class NamespacePolicy:
    """Which Kubernetes namespaces may be synced.

    Attributes
    ----------
    source_namespace:
        Legacy single namespace override. When non-empty it is the only
        allowed namespace and ``allow``/``deny`` are ignored.
    allow:
        Namespaces explicitly allowed; ``*`` allows every namespace.
    deny:
        Namespaces explicitly denied. Takes precedence over ``allow``.
    """

    source_namespace: str = ""
    allow: FrozenSet[str] = frozenset({WILDCARD_NAMESPACE})
    deny: FrozenSet[str] = frozenset()

    @classmethod
    def build(
        cls,
        source_namespace: Optional[str] = None,
        allow: Optional[Iterable[str]] = None,
        deny: Optional[Iterable[str]] = None,
    ) -> "NamespacePolicy":
        allow_set = frozenset(allow) if allow else frozenset({WILDCARD_NAMESPACE})
        return cls(
            source_namespace=source_namespace or "",
            allow=allow_set,
            deny=frozenset(deny or ()),
        )


@dataclass(frozen=True)
class NamingConfig:
    """Destination naming knobs for synced services."""

    prefix: str = ""
    add_namespace_suffix: bool = False
    write_namespace: str = "default"
    mirror_namespaces: bool = False
    mirror_namespace_suffix: str = ""


@dataclass(frozen=True)
class DestinationName:
    name: str
    namespace: str


@dataclass(frozen=True)
class HealthCheckRecord:
    """A TTL health check attached to a Consul service instance."""

    service_id: str
    check_id: str
    status: CheckStatus
    output: str = ""
    name: str = ""
    namespace: Optional[str] = None
