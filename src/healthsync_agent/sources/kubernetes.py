"""List-then-watch pod event source backed by the Kubernetes API."""

from __future__ import annotations

import logging
import time
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, Optional, Set, Tuple

from kubernetes import watch
from kubernetes.client import ApiException

from healthsync.events import ChangeEvent, EventKind, Key
from healthsync.pods import key_for
from healthsync.source import EmitFunc, EventSource, FailureFunc

LOG = logging.getLogger(__name__)

WATCH_EVENT_KINDS: Dict[str, EventKind] = {
    "ADDED": EventKind.ADDED,
    "MODIFIED": EventKind.UPDATED,
    "DELETED": EventKind.DELETED,
}

# Credentials were rejected; retrying cannot help.
FATAL_STATUSES = frozenset({401, 403})

# The watch thread only notices stop() once the stream yields or times out.
STOP_TIMEOUT = 5.0


class WatchExpired(Exception):
    """The watch can not be resumed and a full re-list is required."""


class KubernetesPodSource(EventSource):
    """Emit a change event for every pod add, update and delete.

    On start every existing pod is listed and emitted as ``UPDATED`` so a
    full reconciliation pass happens before streaming begins. Stream errors
    and expired resource versions are recovered by re-listing; only
    rejected credentials are reported as a terminal failure.
    """

    def __init__(
        self,
        core_api: Any,
        *,
        namespace: str = "",
        label_selector: Optional[str] = None,
        watch_timeout: int = 300,
        resync_period: float = 0.0,
        relist_backoff: float = 1.0,
        max_relist_backoff: float = 30.0,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self._core_api = core_api
        self._namespace = namespace
        self._label_selector = label_selector
        self._watch_timeout = watch_timeout
        self._resync_period = resync_period
        self._relist_backoff = relist_backoff
        self._max_relist_backoff = max_relist_backoff
        self._watch_factory = watch_factory

        self._emit: Optional[EmitFunc] = None
        self._on_failure: Optional[FailureFunc] = None
        self._resource_version: Optional[str] = None
        # Pods seen by the last list and the watch since, for gap deletions.
        self._known: Set[Key] = set()
        self._last_list = 0.0
        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self._active_watch: Any = None
        self._watch_lock = Lock()

    @property
    def resource_version(self) -> Optional[str]:
        return self._resource_version

    # ------------------------------------------------------------------
    # EventSource
    # ------------------------------------------------------------------
    def start(self, emit: EmitFunc, on_failure: FailureFunc) -> None:
        self._emit = emit
        self._on_failure = on_failure
        self._stop_event.clear()

        LOG.info(
            "starting pod source (namespace=%s, selector=%s)",
            self._namespace or "<all>",
            self._label_selector or "<none>",
        )
        self.relist()

        self._thread = Thread(target=self._run, name="healthsync-pod-watch", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        with self._watch_lock:
            active = self._active_watch
        if active is not None:
            active.stop()
        if self._thread is not None:
            self._thread.join(timeout=STOP_TIMEOUT)
            self._thread = None
        LOG.info("pod source stopped")

    # ------------------------------------------------------------------
    # List / watch
    # ------------------------------------------------------------------
    def _list_call(self) -> Tuple[Callable[..., Any], Tuple[Any, ...]]:
        if self._namespace:
            return self._core_api.list_namespaced_pod, (self._namespace,)
        return self._core_api.list_pod_for_all_namespaces, ()

    def _selector_kwargs(self) -> Dict[str, Any]:
        if self._label_selector:
            return {"label_selector": self._label_selector}
        return {}

    def relist(self) -> None:
        """List all pods, emit ``UPDATED`` for each and remember the version.

        Pods known from before that are missing from the listing were deleted
        while no watch was open and are emitted as ``DELETED``.
        """

        func, args = self._list_call()
        pod_list = func(*args, **self._selector_kwargs())
        items = pod_list.items or []
        listed: Set[Key] = set()
        for pod in items:
            key = key_for(pod)
            listed.add(key)
            self._publish(ChangeEvent(key, EventKind.UPDATED))
        for key in sorted(self._known - listed):
            LOG.debug("pod %s disappeared while not watching", key)
            self._publish(ChangeEvent(key, EventKind.DELETED))
        self._known = listed
        self._resource_version = pod_list.metadata.resource_version
        self._last_list = time.monotonic()
        LOG.debug("listed %d pods at resource version %s", len(items), self._resource_version)

    def watch_once(self) -> None:
        """Stream events until the server closes the watch.

        Raises :class:`WatchExpired` when the stream reports an error event,
        in which case the caller must re-list.
        """

        func, args = self._list_call()
        kwargs = self._selector_kwargs()
        timeout = self._watch_timeout
        if self._resync_period > 0:
            timeout = min(timeout, max(1, int(self._resync_period)))
        kwargs["timeout_seconds"] = timeout
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version

        w = self._watch_factory()
        with self._watch_lock:
            self._active_watch = w
        try:
            for event in w.stream(func, *args, **kwargs):
                if self._stop_event.is_set():
                    break
                event_type = event.get("type")
                obj = event.get("object")
                if event_type == "ERROR":
                    raise WatchExpired(f"watch error event: {event.get('raw_object', obj)}")

                metadata = getattr(obj, "metadata", None)
                version = getattr(metadata, "resource_version", None)
                if version:
                    self._resource_version = version

                kind = WATCH_EVENT_KINDS.get(event_type)
                if kind is None:
                    # BOOKMARK or unknown: only advances the resource version.
                    continue
                key = key_for(obj)
                if kind is EventKind.DELETED:
                    self._known.discard(key)
                else:
                    self._known.add(key)
                self._publish(ChangeEvent(key, kind))
                if self._resync_due():
                    break
        finally:
            w.stop()
            with self._watch_lock:
                self._active_watch = None

    def _resync_due(self) -> bool:
        return self._resync_period > 0 and (
            time.monotonic() - self._last_list >= self._resync_period
        )

    def _publish(self, event: ChangeEvent) -> None:
        if self._emit is None:
            raise RuntimeError("pod source used before start()")
        self._emit(event)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------
    def _run(self) -> None:
        needs_list = False
        while not self._stop_event.is_set():
            try:
                if needs_list or self._resync_due():
                    self._relist_with_backoff()
                    needs_list = False
                    continue
                self.watch_once()
            except ApiException as exc:
                if exc.status in FATAL_STATUSES:
                    self._fail(exc)
                    return
                if exc.status == 410:
                    LOG.info("resource version %s expired, re-listing", self._resource_version)
                else:
                    LOG.warning("pod watch failed (status=%s): %s", exc.status, exc.reason)
                needs_list = True
            except WatchExpired as exc:
                LOG.info("%s, re-listing", exc)
                needs_list = True
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                LOG.warning("pod watch stream broke: %s", exc)
                needs_list = True

    def _relist_with_backoff(self) -> None:
        backoff = self._relist_backoff
        while not self._stop_event.is_set():
            try:
                self.relist()
                return
            except ApiException as exc:
                if exc.status in FATAL_STATUSES:
                    raise
                LOG.warning("pod re-list failed (status=%s), retrying in %.1fs", exc.status, backoff)
            except Exception as exc:
                LOG.warning("pod re-list failed: %s, retrying in %.1fs", exc, backoff)
            self._stop_event.wait(backoff)
            backoff = min(backoff * 2, self._max_relist_backoff)

    def _fail(self, exc: BaseException) -> None:
        LOG.error("pod source can not continue: %s", exc)
        if self._on_failure is not None:
            self._on_failure(exc)
