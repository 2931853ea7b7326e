"""Controller wiring an event source, the work queue and a handler."""

from __future__ import annotations

import logging
from enum import Enum
from threading import Event, Lock, Thread
from typing import List, Optional

from .events import ChangeEvent, Key
from .handlers.base import Handler
from .queue import RateLimitingQueue
from .source import EventSource

LOG = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 10


class ControllerState(Enum):
    CREATED = "created"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


class Controller:
    """Drain keys emitted by ``source`` into ``handler`` using worker threads.

    Per-key failures are retried with backoff up to ``max_retries`` times and
    then dropped; they never stop the controller. Only a terminal failure of
    the event source does.
    """

    def __init__(
        self,
        source: EventSource,
        handler: Handler,
        queue: Optional[RateLimitingQueue] = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        workers: int = 1,
        poll_interval: float = 0.5,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._source = source
        self._handler = handler
        self._queue = queue or RateLimitingQueue()
        self._max_retries = max_retries
        self._workers = workers
        self._poll_interval = poll_interval

        self._state = ControllerState.CREATED
        self._state_lock = Lock()
        self._stop_event = Event()
        self._failed = Event()
        self._failure: Optional[BaseException] = None
        self._threads: List[Thread] = []
        self.done = Event()

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    @property
    def queue(self) -> RateLimitingQueue:
        return self._queue

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    def _set_state(self, state: ControllerState) -> None:
        with self._state_lock:
            LOG.debug("controller state %s -> %s", self._state.value, state.value)
            self._state = state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def run(self, stop_event: Optional[Event] = None) -> bool:
        """Run until stopped.

        Returns ``True`` after a graceful stop and ``False`` when the event
        source failed terminally.
        """

        if self.state is not ControllerState.CREATED:
            raise RuntimeError("controller can only be run once")
        if stop_event is not None:
            self._stop_event = stop_event

        self._set_state(ControllerState.RUNNING)
        try:
            self._source.start(self._enqueue, self._on_source_failure)
        except Exception as exc:
            LOG.error("failed to start event source: %s", exc)
            self._on_source_failure(exc)
            self._shutdown(source_started=False)
            return False

        for index in range(self._workers):
            thread = Thread(
                target=self._worker, name=f"healthsync-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        LOG.info("controller started with %d worker(s)", self._workers)

        while not (self._stop_event.is_set() or self._failed.is_set()):
            self._stop_event.wait(self._poll_interval)

        self._shutdown(source_started=True)
        return not self._failed.is_set()

    def stop(self) -> None:
        """Request a graceful shutdown of a running controller."""

        self._stop_event.set()

    def _shutdown(self, source_started: bool) -> None:
        self._set_state(ControllerState.SHUTTING_DOWN)
        if source_started:
            try:
                self._source.stop()
            except Exception:
                LOG.exception("error while stopping event source")
        self._queue.shut_down()
        for thread in self._threads:
            thread.join()
        self._set_state(ControllerState.STOPPED)
        LOG.info("controller stopped")
        self.done.set()

    def _on_source_failure(self, exc: BaseException) -> None:
        if self._failure is None:
            self._failure = exc
        LOG.error("event source failed terminally: %s", exc)
        self._failed.set()

    def _enqueue(self, event: ChangeEvent) -> None:
        LOG.debug("%s event for %s", event.kind.value, event.key)
        self._queue.add(event.key)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self) -> bool:
        """Process one key from the queue.

        Returns ``False`` once the queue has been shut down.
        """

        key, shutdown = self._queue.get()
        if shutdown or key is None:
            return False

        try:
            self._handler.handle(key)
        except Exception as exc:
            self._handle_error(key, exc)
        else:
            self._queue.forget(key)
        finally:
            self._queue.done(key)
        return True

    def _handle_error(self, key: Key, exc: Exception) -> None:
        retries = self._queue.num_requeues(key)
        if retries < self._max_retries:
            LOG.warning(
                "error syncing %s (attempt %d/%d), requeueing: %s",
                key,
                retries + 1,
                self._max_retries,
                exc,
            )
            self._queue.add_rate_limited(key)
            return

        LOG.error(
            "giving up on %s after %d retries: %s", key, self._max_retries, exc
        )
        self._queue.forget(key)
