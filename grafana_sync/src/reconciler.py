from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from grafana_sync.src import selectors
from grafana_sync.src.grafana import (
    ClientConfigError,
    GrafanaAPIError,
    GrafanaClient,
    build_client,
)
from grafana_sync.src.kube import (
    KUBE_ERRORS,
    DashboardResource,
    get_dashboard,
    list_dashboards,
    record_event,
)
from grafana_sync.src.metrics import METRICS
from grafana_sync.src.registry import Registry, RegistryEntry
from grafana_sync.src.rendering import DashboardRenderer, RenderError
from grafana_sync.src.state import ControllerState, StateHolder


@dataclass(frozen=True)
class FullResync:
    """Re-evaluate every dashboard in a namespace."""

    namespace: str


@dataclass(frozen=True)
class ResourceChanged:
    """A single dashboard was added, modified or deleted."""

    namespace: str
    name: str


Request = FullResync | ResourceChanged


class RequeueKind(Enum):
    NONE = "none"
    AFTER = "after"
    ERROR = "error"


@dataclass(frozen=True)
class RequeueDirective:
    """What the work queue should do with a request once it has been handled."""

    kind: RequeueKind
    delay_seconds: float = 0.0
    error: str | None = None

    @classmethod
    def done(cls) -> RequeueDirective:
        return cls(RequeueKind.NONE)

    @classmethod
    def after(cls, delay_seconds: float) -> RequeueDirective:
        return cls(RequeueKind.AFTER, delay_seconds=delay_seconds)

    @classmethod
    def failed(cls, error: BaseException | str) -> RequeueDirective:
        return cls(RequeueKind.ERROR, error=str(error))


class Action(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    DELETED = "deleted"
    FAILED = "failed"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class DashboardOutcome:
    namespace: str
    name: str
    action: Action
    message: str = ""


@dataclass(frozen=True)
class PassResult:
    """Per-dashboard outcomes of one namespace pass."""

    namespace: str
    outcomes: tuple[DashboardOutcome, ...]
    aborted: bool = False

    def by_action(self, action: Action) -> list[str]:
        return sorted(o.name for o in self.outcomes if o.action is action)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.action is Action.FAILED)


def compute_delete_set(
    known: Iterable[RegistryEntry],
    desired: Iterable[DashboardResource],
) -> list[RegistryEntry]:
    """Return registry entries whose resource is absent from the namespace listing."""
    present = {resource.key for resource in desired}
    return sorted(
        (entry for entry in known if entry.key not in present),
        key=lambda entry: entry.name,
    )


class Reconciler:
    """Converges Grafana towards the ``GrafanaDashboard`` resources of a namespace.

    Every request results in a full pass over the namespace rather than a
    per-resource patch.  A pass:

    1. Lists the namespace's dashboards with a single call (the desired set).
    2. Computes the delete set: registry entries absent from the listing.
    3. For each listed dashboard: skips selector mismatches, renders it with
       the stored fingerprint (``None`` payload means unchanged, no write),
       re-checks the namespace selector, ensures the namespace folder and
       submits the dashboard.  A dashboard whose uid changed has its previous
       uid deleted.  The registry is written only after Grafana accepted
       the dashboard.  Failures are reported and the pass moves on.
    4. Deletes each entry of the delete set by uid; the entry is removed
       only when the delete succeeded, so failed deletes are retried later.
    5. Marks the namespace synced once.

    Selector and namespace-selector mismatches never delete anything; only
    disappearance from the listing does.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        core_api: CoreV1Api,
        registry: Registry,
        state: StateHolder,
        renderer: DashboardRenderer | None = None,
        client_factory: Callable[[ControllerState], GrafanaClient] = build_client,
        requeue_delay_seconds: float = 10.0,
        record_events: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.core_api = core_api
        self.registry = registry
        self.state = state
        self.renderer = renderer or DashboardRenderer(core_api)
        self.client_factory = client_factory
        self.requeue_delay_seconds = requeue_delay_seconds
        self.record_events = record_events
        self.logger = logger or logging.getLogger(__name__)

        self._stop = threading.Event()
        self._active_client: GrafanaClient | None = None
        self._client_lock = threading.Lock()

    def request_stop(self) -> None:
        """Abort the pass in progress: no further calls, in-flight Grafana calls are cut off."""
        self._stop.set()
        with self._client_lock:
            active_client = self._active_client
        if active_client is not None:
            active_client.close()

    def resume(self) -> None:
        """Clear a previous stop request so the reconciler can run again."""
        self._stop.clear()

    def handle(self, request: Request) -> RequeueDirective:
        """Reconciliation entry point for one queued request."""
        state = self.state.current()
        if not state.ready:
            self.logger.debug("No Grafana instance available; skipping %s", request)
            METRICS.not_ready_total.inc()
            return RequeueDirective.after(self.requeue_delay_seconds)

        # Selectors are published together with readiness; until then the
        # controller cannot tell which dashboards it owns.
        if state.dashboard_selectors is None:
            self.logger.debug("Dashboard selectors not initialised; skipping %s", request)
            METRICS.not_ready_total.inc()
            return RequeueDirective.after(self.requeue_delay_seconds)

        try:
            client = self.client_factory(state)
        except ClientConfigError as exc:
            self.logger.warning("Cannot build Grafana client: %s", exc)
            return RequeueDirective.after(self.requeue_delay_seconds)

        with self._client_lock:
            self._active_client = client
        try:
            if isinstance(request, ResourceChanged):
                try:
                    resource = get_dashboard(
                        self.custom_api,
                        request.namespace,
                        request.name,
                        timeout_seconds=state.timeout_seconds,
                    )
                except KUBE_ERRORS as exc:
                    self.logger.error(
                        "Failed to read dashboard %s/%s: %s",
                        request.namespace,
                        request.name,
                        exc,
                    )
                    return RequeueDirective.failed(exc)

                if resource is None:
                    self.logger.info(
                        "Dashboard %s/%s is gone; resyncing namespace",
                        request.namespace,
                        request.name,
                    )
                elif not selectors.matches(resource.labels, state.dashboard_selectors):
                    self.logger.debug(
                        "Dashboard %s/%s does not match selectors",
                        request.namespace,
                        request.name,
                    )
                    return RequeueDirective.done()

            try:
                self.reconcile(request.namespace, client, state)
            except KUBE_ERRORS as exc:
                self.logger.error(
                    "Failed to list dashboards in namespace %s: %s",
                    request.namespace,
                    exc,
                )
                METRICS.passes_total.labels(namespace=request.namespace, result="failed").inc()
                return RequeueDirective.failed(exc)
            return RequeueDirective.done()
        finally:
            with self._client_lock:
                if self._active_client is client:
                    self._active_client = None
            client.close()

    def reconcile(
        self, namespace: str, client: GrafanaClient, state: ControllerState
    ) -> PassResult:
        """Run one full pass over *namespace*.  Listing errors propagate."""
        with self.registry.namespace_lock(namespace):
            started = time.monotonic()
            desired = list_dashboards(
                self.custom_api, namespace, timeout_seconds=state.timeout_seconds
            )
            to_delete = compute_delete_set(self.registry.dashboards_in(namespace), desired)

            outcomes: list[DashboardOutcome] = []
            aborted = False
            for resource in desired:
                if self._stop.is_set():
                    aborted = True
                    break
                outcomes.append(self._apply(resource, client, state))

            for entry in to_delete:
                if aborted or self._stop.is_set():
                    aborted = True
                    break
                outcomes.append(self._delete(entry, client))

            for outcome in outcomes:
                METRICS.dashboard_actions_total.labels(
                    namespace=namespace, action=outcome.action.value
                ).inc()

            result = PassResult(namespace=namespace, outcomes=tuple(outcomes), aborted=aborted)
            METRICS.pass_duration_seconds.observe(time.monotonic() - started)
            if aborted:
                self.logger.warning("Pass for namespace %s aborted by shutdown", namespace)
                METRICS.passes_total.labels(namespace=namespace, result="aborted").inc()
                return result

            self.registry.mark_synced(namespace)
            METRICS.passes_total.labels(namespace=namespace, result="completed").inc()
            self.logger.info(
                "Reconciled namespace %s: %d dashboard(s), %d written, %d deleted, %d failed",
                namespace,
                len(desired),
                len(result.by_action(Action.CREATED)) + len(result.by_action(Action.UPDATED)),
                len(result.by_action(Action.DELETED)),
                result.failed,
            )
            return result

    def _apply(
        self, resource: DashboardResource, client: GrafanaClient, state: ControllerState
    ) -> DashboardOutcome:
        """Create or update one dashboard; never raises for per-resource problems."""
        namespace, name = resource.key
        if not selectors.matches(resource.labels, state.dashboard_selectors):
            self.logger.debug("Dashboard %s/%s selector does not match", namespace, name)
            return DashboardOutcome(namespace, name, Action.SKIPPED, "selector mismatch")

        known = self.registry.get(namespace, name)
        try:
            rendered = self.renderer.render(
                resource, known.fingerprint if known is not None else None
            )
        except (RenderError, *KUBE_ERRORS) as exc:
            return self._failure(resource, exc, "cannot process dashboard")

        if rendered.payload is None:
            self.registry.set_plugins(namespace, name, rendered.plugins)
            return DashboardOutcome(namespace, name, Action.UNCHANGED)

        if state.namespace_selector is not None:
            try:
                namespace_matches = selectors.matches_namespace(
                    self.core_api,
                    namespace,
                    state.namespace_selector,
                    timeout_seconds=state.timeout_seconds,
                )
            except KUBE_ERRORS as exc:
                return self._failure(resource, exc, "cannot read namespace labels")
            if not namespace_matches:
                self.logger.debug(
                    "Dashboard %s/%s skipped because the namespace labels do not match",
                    namespace,
                    name,
                )
                return DashboardOutcome(namespace, name, Action.SKIPPED, "namespace mismatch")

        try:
            folder_id = client.get_or_create_folder(namespace)
        except GrafanaAPIError as exc:
            return self._failure(resource, exc, "failed to get or create namespace folder")

        try:
            uid = client.create_or_update(rendered.payload, folder_id)
        except GrafanaAPIError as exc:
            return self._failure(resource, exc, "cannot submit dashboard")

        if known is not None and known.uid != uid:
            # The old entry stays until the previous uid is gone so the next
            # pass resubmits and retries the removal.
            try:
                status = client.delete_by_uid(known.uid)
            except GrafanaAPIError as exc:
                return self._failure(resource, exc, "cannot remove dashboard under its previous uid")
            self.logger.info(
                "Dashboard %s/%s moved from uid %s to %s: %s",
                namespace,
                name,
                known.uid,
                uid,
                status.message,
                extra={"namespace": namespace, "dashboard": name},
            )

        self.registry.put(
            RegistryEntry(
                namespace=namespace,
                name=name,
                fingerprint=rendered.fingerprint,
                uid=uid,
                plugins=rendered.plugins,
            )
        )
        self._event(resource, "Normal", "Success", "dashboard successfully submitted")
        self.logger.info(
            "Dashboard %s/%s successfully submitted (uid=%s, folder=%d)",
            namespace,
            name,
            uid,
            folder_id,
            extra={"namespace": namespace, "dashboard": name},
        )
        action = Action.CREATED if known is None else Action.UPDATED
        return DashboardOutcome(namespace, name, action)

    def _delete(self, entry: RegistryEntry, client: GrafanaClient) -> DashboardOutcome:
        try:
            status = client.delete_by_uid(entry.uid)
        except GrafanaAPIError as exc:
            self.logger.error(
                "Failed deleting dashboard %s/%s (uid=%s): %s",
                entry.namespace,
                entry.name,
                entry.uid,
                exc,
                extra={"namespace": entry.namespace, "dashboard": entry.name},
            )
            METRICS.errors_total.labels(namespace=entry.namespace).inc()
            return DashboardOutcome(entry.namespace, entry.name, Action.FAILED, str(exc))

        self.registry.remove(entry.namespace, entry.name)
        self.logger.info(
            "Dashboard %s/%s deleted (uid=%s): %s",
            entry.namespace,
            entry.name,
            entry.uid,
            status.message,
        )
        return DashboardOutcome(entry.namespace, entry.name, Action.DELETED, status.message)

    def _failure(
        self, resource: DashboardResource, exc: Exception, context: str
    ) -> DashboardOutcome:
        """Report a per-dashboard failure and leave the registry untouched."""
        namespace, name = resource.key
        self._event(resource, "Warning", "ProcessingError", str(exc))

        conflict = (isinstance(exc, GrafanaAPIError) and exc.conflict) or (
            isinstance(exc, ApiException) and exc.status == 409
        )
        if conflict:
            # The object may just be outdated; a later pass corrects it.
            self.logger.debug("Conflict on dashboard %s/%s: %s", namespace, name, exc)
            return DashboardOutcome(namespace, name, Action.CONFLICT, str(exc))

        self.logger.error(
            "%s %s/%s: %s",
            context.capitalize(),
            namespace,
            name,
            exc,
            extra={"namespace": namespace, "dashboard": name},
        )
        METRICS.errors_total.labels(namespace=namespace).inc()
        return DashboardOutcome(namespace, name, Action.FAILED, str(exc))

    def _event(
        self, resource: DashboardResource, event_type: str, reason: str, message: str
    ) -> None:
        if self.record_events:
            record_event(self.core_api, resource, event_type, reason, message)
