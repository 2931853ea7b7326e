"""Abstract interface for units of reconciliation work."""

from __future__ import annotations

from abc import ABC, abstractmethod

from healthsync.events import Key


class Handler(ABC):
    """Base class for handlers driven by :class:`~healthsync.controller.Controller`.

    The controller never invokes a handler concurrently for the same key.
    """

    @abstractmethod
    def handle(self, key: Key) -> None:
        """Reconcile the resource identified by ``key``.

        Any exception is treated as a retryable failure; returning normally
        marks the key as successfully processed.
        """
