from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from grafana_sync.src.grafana import ClientConfigError, GrafanaAPIError, GrafanaClient
from grafana_sync.src.kube import (
    DASHBOARD_GROUP,
    DASHBOARD_PLURAL,
    DASHBOARD_VERSION,
    DashboardResource,
    dashboards_from_listing,
)
from grafana_sync.src.metrics import METRICS
from grafana_sync.src.reconciler import (
    FullResync,
    Request,
    RequeueDirective,
    RequeueKind,
    ResourceChanged,
)
from grafana_sync.src.state import ControllerState, StateHolder

LOGGER = logging.getLogger(__name__)


class WorkQueue:
    """Serialized, coalescing queue of reconciliation requests.

    Passes re-list the namespace from scratch, so requests can be merged
    freely without losing changes:

    - an identical request already waiting is dropped;
    - a waiting ``FullResync(ns)`` absorbs ``ResourceChanged(ns, *)``, and
      enqueuing ``FullResync(ns)`` removes waiting ``ResourceChanged(ns, *)``;
    - a request added while the same request is being processed is queued
      again once processing finishes, so the change is not missed.

    Requeue directives are applied in :meth:`done`.  ``ERROR`` directives use
    bounded exponential backoff (1 s doubling to ``max_backoff_seconds``) with
    the attempt counter reset by the next successful pass.
    """

    def __init__(
        self,
        max_backoff_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Request] = deque()
        self._queued: set[Request] = set()
        self._processing: set[Request] = set()
        self._dirty: set[Request] = set()
        self._delayed: dict[Request, float] = {}
        self._attempts: dict[Request, int] = {}
        self._shutdown = False
        METRICS.queue_depth.set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def delayed(self) -> dict[Request, float]:
        """Return a copy of the delayed requests and their due-at timestamps."""
        with self._cond:
            return dict(self._delayed)

    def add(self, request: Request) -> None:
        with self._cond:
            if self._shutdown:
                return
            self._enqueue_locked(request)

    def add_all(self, requests: Iterable[Request]) -> None:
        with self._cond:
            if self._shutdown:
                return
            for request in requests:
                self._enqueue_locked(request)

    def add_after(self, request: Request, delay_seconds: float) -> None:
        """Deliver *request* after *delay_seconds*; an earlier existing deadline wins."""
        with self._cond:
            if self._shutdown:
                return
            self._schedule_locked(request, delay_seconds)

    def get(self, timeout: float | None = None) -> Request | None:
        """Block until a request is available, *timeout* elapses, or shutdown."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                self._promote_due_locked()
                if self._queue:
                    request = self._queue.popleft()
                    self._queued.discard(request)
                    self._processing.add(request)
                    METRICS.queue_depth.set(len(self._queue))
                    return request

                now = self._clock()
                wait_for: float | None = None
                if self._delayed:
                    wait_for = max(0.0, min(self._delayed.values()) - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, request: Request, directive: RequeueDirective) -> float | None:
        """Finish processing *request*; return the requeue delay that was scheduled, if any."""
        delay: float | None = None
        with self._cond:
            self._processing.discard(request)
            if directive.kind is RequeueKind.NONE:
                self._attempts.pop(request, None)
            elif directive.kind is RequeueKind.AFTER:
                delay = directive.delay_seconds
            else:
                attempt = self._attempts.get(request, 0) + 1
                self._attempts[request] = attempt
                delay = min(self.max_backoff_seconds, float(2 ** (attempt - 1)))
                LOGGER.warning(
                    "Request %s failed (%s); scheduling retry attempt %d in %.1fs",
                    request,
                    directive.error,
                    attempt,
                    delay,
                )

            if not self._shutdown:
                if delay is not None:
                    self._schedule_locked(request, delay)
                if request in self._dirty:
                    self._dirty.discard(request)
                    self._enqueue_locked(request)
            else:
                self._dirty.discard(request)

        if directive.kind is not RequeueKind.NONE:
            METRICS.requeues_total.labels(kind=directive.kind.value).inc()
        return delay

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def _enqueue_locked(self, request: Request) -> None:
        if request in self._processing:
            self._dirty.add(request)
            return
        if request in self._queued:
            return
        if isinstance(request, ResourceChanged):
            if FullResync(request.namespace) in self._queued:
                return
        else:
            absorbed = [
                queued
                for queued in self._queue
                if isinstance(queued, ResourceChanged) and queued.namespace == request.namespace
            ]
            for queued in absorbed:
                self._queue.remove(queued)
                self._queued.discard(queued)

        self._delayed.pop(request, None)
        self._queue.append(request)
        self._queued.add(request)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def _schedule_locked(self, request: Request, delay_seconds: float) -> None:
        due_at = self._clock() + delay_seconds
        existing = self._delayed.get(request)
        if existing is None or due_at < existing:
            self._delayed[request] = due_at
        self._cond.notify()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        due = [request for request, due_at in self._delayed.items() if due_at <= now]
        for request in due:
            del self._delayed[request]
            self._enqueue_locked(request)


class ResyncTimer:
    """Periodically enqueues a ``FullResync`` for every known namespace.

    This self-heals drift caused by changes made directly in Grafana.
    """

    def __init__(
        self,
        queue: WorkQueue,
        namespaces_fn: Callable[[], Iterable[str]],
        period_seconds: float,
    ) -> None:
        self.queue = queue
        self.namespaces_fn = namespaces_fn
        self.period_seconds = period_seconds

    def resync_all(self) -> int:
        """Enqueue one full resync per namespace and return how many were enqueued."""
        namespaces = sorted(set(self.namespaces_fn()))
        self.queue.add_all(FullResync(ns) for ns in namespaces)
        return len(namespaces)

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.period_seconds):
            LOGGER.info("Running periodic dashboard resync")
            try:
                self.resync_all()
            except Exception:
                LOGGER.exception("Failed to enumerate namespaces for periodic resync")


class DashboardWatcher:
    """List-then-watch loop over ``GrafanaDashboard`` resources.

    Watches one namespace, or every namespace when ``namespace`` is ``None``.

    1. Retries the initial list with exponential backoff and jitter; the
       listing enqueues a ``FullResync`` for every namespace it contains.
    2. Streams events from the list's ``resourceVersion``; every ADDED,
       MODIFIED or DELETED event enqueues ``ResourceChanged``.
    3. On ``410 Gone`` re-lists, which resyncs every namespace again since
       deletions may have been missed.
    4. On transient errors backs off with jitter, doubling up to 30 s.

    ``401`` / ``403`` are treated as RBAC misconfiguration and stop the
    watcher with an error log instead of retrying forever.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        queue: WorkQueue,
        namespace: str | None = None,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.queue = queue
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def scope(self) -> str:
        return self.namespace or "<all namespaces>"

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        kwargs: dict[str, Any] = {
            "group": DASHBOARD_GROUP,
            "version": DASHBOARD_VERSION,
            "plural": DASHBOARD_PLURAL,
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace
            return self.custom_api.list_namespaced_custom_object, kwargs
        return self.custom_api.list_cluster_custom_object, kwargs

    def list_and_enqueue(self) -> str | None:
        """List dashboards, enqueue a resync per namespace and return the resourceVersion."""
        list_fn, kwargs = self._list_call()
        listing = list_fn(**kwargs)
        namespaces = {resource.namespace for resource in dashboards_from_listing(listing)}
        if self.namespace:
            namespaces.add(self.namespace)
        namespaces.discard("")
        self.queue.add_all(FullResync(ns) for ns in sorted(namespaces))
        metadata = listing.get("metadata") if isinstance(listing, Mapping) else None
        return (metadata or {}).get("resourceVersion")

    def handle_event(self, event_type: str, obj: Mapping[str, Any]) -> Request | None:
        """Translate one watch event into a queued request."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        resource = DashboardResource.from_object(obj)
        if not resource.namespace or not resource.name:
            self.logger.warning("Skipping dashboard event with missing namespace or name")
            return None
        request = ResourceChanged(resource.namespace, resource.name)
        self.logger.debug("Dashboard %s event for %s/%s", event_type, *resource.key)
        self.queue.add(request)
        return request

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self.list_and_enqueue()
                self.ready.set()
                self.logger.info(
                    "Watching dashboards in %s from resourceVersion %s",
                    self.scope,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing dashboards (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial dashboard list failed for %s", self.scope)
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial dashboard list")
                METRICS.watch_errors_total.inc()
            startup_backoff_seconds = self._backoff(stop, startup_backoff_seconds)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                list_fn, kwargs = self._list_call()
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if not isinstance(obj, Mapping):
                        continue
                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        raise ApiException(status=obj.get("code"), reason=obj.get("message"))

                    metadata = obj.get("metadata") or {}
                    if metadata.get("resourceVersion"):
                        resource_version = metadata["resourceVersion"]
                    self.handle_event(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self.list_and_enqueue()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


class ReadinessProbe:
    """Polls Grafana health and publishes readiness transitions to the state holder."""

    def __init__(
        self,
        state: StateHolder,
        client_factory: Callable[[ControllerState], GrafanaClient],
        period_seconds: float,
    ) -> None:
        self.state = state
        self.client_factory = client_factory
        self.period_seconds = period_seconds

    def check_once(self) -> bool:
        snapshot = self.state.current()
        try:
            with self.client_factory(snapshot) as grafana:
                healthy = grafana.health()
        except (ClientConfigError, GrafanaAPIError) as exc:
            if snapshot.ready:
                LOGGER.warning("Grafana health check failed: %s", exc)
            healthy = False
        self.state.set_ready(healthy)
        return healthy

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.check_once()
            except Exception:
                LOGGER.exception("Unexpected error in Grafana readiness probe")
            stop_event.wait(timeout=self.period_seconds)
