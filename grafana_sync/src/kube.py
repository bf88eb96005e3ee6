from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as TransportError

LOGGER = logging.getLogger(__name__)

DASHBOARD_GROUP = "integreatly.org"
DASHBOARD_VERSION = "v1alpha1"
DASHBOARD_PLURAL = "grafanadashboards"
DASHBOARD_KIND = "GrafanaDashboard"
EVENT_SOURCE = "grafana-dashboard-sync"

# Errors raised by Kubernetes API calls: HTTP error responses and transport
# failures (timeouts, refused connections) from the underlying urllib3 pool.
KUBE_ERRORS: tuple[type[Exception], ...] = (ApiException, TransportError)


@dataclass(frozen=True)
class DashboardResource:
    """A ``GrafanaDashboard`` custom resource as read from the API server."""

    namespace: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    spec: Mapping[str, Any] = field(default_factory=dict)
    uid: str = ""
    resource_version: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> DashboardResource:
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec")
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            labels={
                str(k): "" if v is None else str(v)
                for k, v in (metadata.get("labels") or {}).items()
            },
            spec=spec if isinstance(spec, Mapping) else {},
            uid=str(metadata.get("uid") or ""),
            resource_version=str(metadata.get("resourceVersion") or ""),
        )


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def dashboards_from_listing(listing: Any) -> list[DashboardResource]:
    """Parse the ``items`` of a CustomObjects list response."""
    items = listing.get("items") if isinstance(listing, Mapping) else None
    return [
        DashboardResource.from_object(item)
        for item in items or []
        if isinstance(item, Mapping)
    ]


def list_dashboards(
    custom_api: CustomObjectsApi,
    namespace: str,
    timeout_seconds: float | None = None,
) -> list[DashboardResource]:
    """List every dashboard in *namespace* with a single API call.

    Errors propagate: a pass cannot compute deletions from a partial listing.
    """
    listing = custom_api.list_namespaced_custom_object(
        group=DASHBOARD_GROUP,
        version=DASHBOARD_VERSION,
        namespace=namespace,
        plural=DASHBOARD_PLURAL,
        _request_timeout=timeout_seconds,
    )
    return dashboards_from_listing(listing)


def list_all_dashboards(
    custom_api: CustomObjectsApi,
    timeout_seconds: float | None = None,
) -> list[DashboardResource]:
    listing = custom_api.list_cluster_custom_object(
        group=DASHBOARD_GROUP,
        version=DASHBOARD_VERSION,
        plural=DASHBOARD_PLURAL,
        _request_timeout=timeout_seconds,
    )
    return dashboards_from_listing(listing)


def get_dashboard(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    timeout_seconds: float | None = None,
) -> DashboardResource | None:
    """Return the named dashboard, or ``None`` if it no longer exists."""
    try:
        obj = custom_api.get_namespaced_custom_object(
            group=DASHBOARD_GROUP,
            version=DASHBOARD_VERSION,
            namespace=namespace,
            plural=DASHBOARD_PLURAL,
            name=name,
            _request_timeout=timeout_seconds,
        )
    except ApiException as exc:
        if exc.status == 404:
            return None
        raise
    return DashboardResource.from_object(obj)


def read_config_map_value(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    key: str,
    timeout_seconds: float | None = None,
) -> str | None:
    """Return ``data[key]`` of a ConfigMap, or ``None`` when the key is missing."""
    config_map = core_api.read_namespaced_config_map(
        name=name,
        namespace=namespace,
        _request_timeout=timeout_seconds,
    )
    data = getattr(config_map, "data", None) or {}
    value = data.get(key)
    return None if value is None else str(value)


def record_event(
    core_api: CoreV1Api,
    resource: DashboardResource,
    event_type: str,
    reason: str,
    message: str,
) -> None:
    """Attach a Kubernetes Event to *resource*.

    Events are how users see per-dashboard outcomes; failing to record one
    is logged and never fails the pass.
    """
    now = datetime.now(UTC)
    body = client.CoreV1Event(
        metadata=client.V1ObjectMeta(
            generate_name=f"{resource.name}.",
            namespace=resource.namespace,
        ),
        involved_object=client.V1ObjectReference(
            api_version=f"{DASHBOARD_GROUP}/{DASHBOARD_VERSION}",
            kind=DASHBOARD_KIND,
            name=resource.name,
            namespace=resource.namespace,
            uid=resource.uid or None,
            resource_version=resource.resource_version or None,
        ),
        type=event_type,
        reason=reason,
        message=message[:1024],
        source=client.V1EventSource(component=EVENT_SOURCE),
        first_timestamp=now,
        last_timestamp=now,
        count=1,
    )
    try:
        core_api.create_namespaced_event(namespace=resource.namespace, body=body)
    except KUBE_ERRORS as exc:
        LOGGER.warning(
            "Failed to record %s event for dashboard %s/%s: %s",
            reason,
            resource.namespace,
            resource.name,
            exc,
        )
