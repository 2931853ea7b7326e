"""Reconciliation engine syncing Kubernetes pod health into a service mesh.

The engine is intentionally independent of any concrete cluster or mesh
client:

* an :class:`~healthsync.source.EventSource` replays and streams change
  events, each reduced to a :class:`~healthsync.events.Key`;
* the :class:`~healthsync.queue.RateLimitingQueue` de-duplicates keys,
  guarantees a single in-flight entry per key and retries failures with
  exponential backoff;
* the :class:`~healthsync.controller.Controller` drains the queue into a
  :class:`~healthsync.handlers.base.Handler` from a pool of worker threads.

The concrete handler shipped here,
:class:`~healthsync.handlers.health_check.HealthCheckHandler`, maps pod
readiness to Consul TTL checks.
"""

from .events import ChangeEvent, EventKind, Key  # noqa: F401
from .queue import ExponentialBackoff, RateLimitingQueue  # noqa: F401
from .controller import Controller, ControllerState  # noqa: F401

__all__ = [
    "ChangeEvent",
    "Controller",
    "ControllerState",
    "EventKind",
    "ExponentialBackoff",
    "Key",
    "RateLimitingQueue",
]
