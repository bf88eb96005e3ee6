from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from kubernetes.client import CoreV1Api, CustomObjectsApi

from grafana_sync.src.config import ControllerSettings
from grafana_sync.src.grafana import GrafanaClient, build_client
from grafana_sync.src.kube import KUBE_ERRORS, list_all_dashboards
from grafana_sync.src.reconciler import FullResync, Reconciler, RequeueDirective
from grafana_sync.src.registry import Registry
from grafana_sync.src.rendering import DashboardRenderer
from grafana_sync.src.state import ControllerState, StateHolder
from grafana_sync.src.trigger import DashboardWatcher, ReadinessProbe, ResyncTimer, WorkQueue

LOGGER = logging.getLogger(__name__)


class DashboardController:
    """Runs one reconciliation worker fed by the trigger threads.

    Requests come from three places and all end up in the same
    :class:`WorkQueue`:

    - :class:`DashboardWatcher` (one per watched namespace, or a single
      cluster-wide watcher) for resource changes;
    - :class:`ResyncTimer` for periodic full resyncs;
    - readiness transitions of Grafana, published by :class:`ReadinessProbe`
      through the :class:`StateHolder`; becoming ready resyncs everything.

    The worker takes one request at a time, so passes never overlap.
    ``ready`` is set while the worker loop runs and backs ``/readyz``.
    """

    def __init__(
        self,
        settings: ControllerSettings,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        state: StateHolder | None = None,
        registry: Registry | None = None,
        queue: WorkQueue | None = None,
        client_factory: Callable[[ControllerState], GrafanaClient] = build_client,
        record_events: bool = True,
    ) -> None:
        self.settings = settings
        self.core_api = core_api
        self.custom_api = custom_api
        self.state = state if state is not None else StateHolder(settings.initial_state())
        self.registry = registry if registry is not None else Registry()
        self.queue = queue if queue is not None else WorkQueue()
        self.reconciler = Reconciler(
            custom_api=custom_api,
            core_api=core_api,
            registry=self.registry,
            state=self.state,
            renderer=DashboardRenderer(core_api, settings.grafana_timeout_seconds),
            client_factory=client_factory,
            requeue_delay_seconds=settings.requeue_delay_seconds,
            record_events=record_events,
        )

        namespaces: list[str | None] = list(settings.watch_namespaces) or [None]
        self.watchers = [DashboardWatcher(custom_api, self.queue, namespace=ns) for ns in namespaces]
        self.resync_timer = ResyncTimer(
            self.queue, self.known_namespaces, settings.resync_period_seconds
        )
        self.readiness_probe = (
            ReadinessProbe(self.state, client_factory, settings.readiness_probe_period_seconds)
            if settings.readiness_probe_enabled
            else None
        )

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self.state.subscribe(self._on_state_change)

    def known_namespaces(self) -> list[str]:
        """Namespaces a full resync should cover.

        With explicit watch namespaces that is the configured list.  When
        watching the whole cluster it is every namespace holding a dashboard
        plus every namespace still present in the registry, so a namespace
        whose dashboards were all deleted is still cleaned up.
        """
        if self.settings.watch_namespaces:
            return list(self.settings.watch_namespaces)
        namespaces = set(self.registry.namespaces())
        namespaces.update(
            resource.namespace
            for resource in list_all_dashboards(
                self.custom_api, timeout_seconds=self.settings.grafana_timeout_seconds
            )
        )
        return sorted(ns for ns in namespaces if ns)

    def _on_state_change(self, previous: ControllerState, current: ControllerState) -> None:
        if not current.ready or previous.ready:
            return
        try:
            namespaces = self.known_namespaces()
        except KUBE_ERRORS:
            LOGGER.exception("Failed to enumerate namespaces after Grafana became ready")
            namespaces = self.registry.namespaces()
        LOGGER.info("Grafana became ready; resyncing %d namespace(s)", len(namespaces))
        self.queue.add_all(FullResync(ns) for ns in namespaces)

    def process_next(self, timeout: float | None = None) -> RequeueDirective | None:
        """Handle one queued request; return its directive, or ``None`` if none arrived."""
        request = self.queue.get(timeout=timeout)
        if request is None:
            return None
        try:
            directive = self.reconciler.handle(request)
        except Exception as exc:
            LOGGER.exception("Unexpected error reconciling %s", request)
            directive = RequeueDirective.failed(exc)
        self.queue.done(request, directive)
        return directive

    def status(self) -> dict[str, Any]:
        """Summary surfaced on ``/statusz``."""
        return {
            "grafana_ready": self.state.current().ready,
            "worker_running": self.ready.is_set(),
            "queue_depth": len(self.queue),
            "registry_entries": len(self.registry),
            "synced_namespaces": self.registry.synced_namespaces(),
            "required_plugins": self.registry.required_plugins(),
        }

    def request_stop(self) -> None:
        """Stop the worker loop and abort the pass in progress."""
        self._external_stop.set()
        self.reconciler.request_stop()
        for watcher in self.watchers:
            watcher.request_stop()
        self.queue.shut_down()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _start_triggers(self, trigger_stop: threading.Event) -> list[threading.Thread]:
        targets: list[tuple[str, Callable[[threading.Event], None]]] = [
            (f"watch-{watcher.scope}", watcher.run) for watcher in self.watchers
        ]
        targets.append(("resync-timer", self.resync_timer.run))
        if self.readiness_probe is not None:
            targets.append(("readiness-probe", self.readiness_probe.run))

        threads = []
        for name, target in targets:
            thread = threading.Thread(target=target, args=(trigger_stop,), name=name, daemon=True)
            thread.start()
            threads.append(thread)
        return threads

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the trigger threads and process requests until shutdown."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.reconciler.resume()

        trigger_stop = threading.Event()
        threads = self._start_triggers(trigger_stop)
        self.ready.set()
        LOGGER.info(
            "Dashboard controller started (namespaces=%s)",
            ",".join(self.settings.watch_namespaces) or "<all>",
        )
        try:
            while not self._should_stop(stop):
                self.process_next(timeout=1.0)
        finally:
            self.ready.clear()
            trigger_stop.set()
            for watcher in self.watchers:
                watcher.request_stop()
            self.queue.shut_down()
            for thread in threads:
                thread.join(timeout=5)
                if thread.is_alive():
                    LOGGER.warning("Trigger thread %s did not stop within 5s", thread.name)
            LOGGER.info("Dashboard controller stopped")


def build_controller(
    settings: ControllerSettings,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
) -> DashboardController:
    return DashboardController(settings=settings, core_api=core_api, custom_api=custom_api)
