"""Abstract interface for change event sources."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from .events import ChangeEvent

EmitFunc = Callable[[ChangeEvent], None]
FailureFunc = Callable[[BaseException], None]


class EventSource(ABC):
    """Base class for producers feeding the :class:`~healthsync.controller.Controller`."""

    @abstractmethod
    def start(self, emit: EmitFunc, on_failure: FailureFunc) -> None:
        """Replay current state through ``emit`` and begin streaming changes.

        Raising from ``start`` means the source could not establish its
        initial connection. Failures that happen later and cannot be
        recovered must be reported through ``on_failure``.
        """

    @abstractmethod
    def stop(self) -> None:
        """Stop streaming and release any open connection."""
