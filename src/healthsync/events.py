"""Event primitives exchanged between event sources and the work queue."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventKind(Enum):
    """Kind of change observed on an orchestrator resource."""

    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True, order=True)
class Key:
    """Identity of one reconcilable resource.

    Keys are used for de-duplication and in-flight tracking by the
    reconciliation queue, so they must stay hashable and immutable.
    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ChangeEvent:
    """Signals that the resource identified by ``key`` changed.

    Events never carry the resource body. Handlers re-read the current state
    when the key is processed so they never act on a stale snapshot.
    """

    key: Key
    kind: EventKind
