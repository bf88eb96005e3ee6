from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from hashlib import sha256
from typing import Any

from kubernetes.client import CoreV1Api

from grafana_sync.src.hashing import fingerprint
from grafana_sync.src.kube import DashboardResource, read_config_map_value

LOGGER = logging.getLogger(__name__)

# Grafana rejects dashboard uids longer than 40 characters.
MAX_UID_LENGTH = 40


class RenderError(ValueError):
    """Raised when a dashboard resource cannot be turned into a Grafana payload."""


@dataclass(frozen=True)
class RenderResult:
    """Outcome of rendering one resource.

    ``payload`` is ``None`` when the fingerprint equals the one already
    applied, meaning there is nothing to send to Grafana.
    """

    payload: dict[str, Any] | None
    fingerprint: str
    plugins: tuple[str, ...] = ()


def default_uid(namespace: str, name: str) -> str:
    """Derive a stable Grafana uid from the resource identity."""
    return sha256(f"{namespace}/{name}".encode()).hexdigest()[:MAX_UID_LENGTH]


def plugin_refs(spec: Mapping[str, Any]) -> tuple[str, ...]:
    """Return ``name@version`` (or bare ``name``) for each declared plugin, sorted."""
    refs: set[str] = set()
    for plugin in spec.get("plugins") or []:
        if not isinstance(plugin, Mapping):
            continue
        name = str(plugin.get("name") or "").strip()
        if not name:
            continue
        version = str(plugin.get("version") or "").strip()
        refs.add(f"{name}@{version}" if version else name)
    return tuple(sorted(refs))


def substitute_datasources(text: str, datasources: Any) -> str:
    """Replace ``${inputName}`` placeholders with the mapped datasource names."""
    for mapping in datasources or []:
        if not isinstance(mapping, Mapping):
            continue
        input_name = str(mapping.get("inputName") or "")
        datasource = str(mapping.get("datasourceName") or "")
        if input_name:
            text = re.sub(r"\$\{" + re.escape(input_name) + r"\}", lambda _: datasource, text)
    return text


class DashboardRenderer:
    """Turns a ``GrafanaDashboard`` resource into the payload submitted to Grafana.

    The dashboard JSON comes from ``spec.json`` or, when that is empty, from
    the ConfigMap key named by ``spec.configMapRef``.  The fingerprint covers
    the JSON text after datasource substitution, the datasource inputs, the
    plugin list and the uid override, so a change to a referenced ConfigMap
    is detected even though the resource itself did not change.
    """

    def __init__(self, core_api: CoreV1Api, timeout_seconds: float | None = None) -> None:
        self.core_api = core_api
        self.timeout_seconds = timeout_seconds

    def _source_text(self, resource: DashboardResource) -> str:
        spec = resource.spec
        inline = spec.get("json")
        if isinstance(inline, str) and inline.strip():
            return inline

        ref = spec.get("configMapRef")
        if isinstance(ref, Mapping) and ref.get("name") and ref.get("key"):
            value = read_config_map_value(
                self.core_api,
                namespace=resource.namespace,
                name=str(ref["name"]),
                key=str(ref["key"]),
                timeout_seconds=self.timeout_seconds,
            )
            if value is None:
                raise RenderError(
                    f"key {ref['key']!r} not found in ConfigMap {ref['name']!r}"
                )
            return value

        raise RenderError("dashboard has neither spec.json nor spec.configMapRef")

    def render(
        self, resource: DashboardResource, known_fingerprint: str | None
    ) -> RenderResult:
        spec = resource.spec
        text = substitute_datasources(self._source_text(resource), spec.get("datasources"))
        plugins = plugin_refs(spec)
        uid_override = str(spec.get("uid") or "").strip()

        current = fingerprint(
            {
                "json": text,
                "datasources": spec.get("datasources") or [],
                "plugins": list(plugins),
                "uid": uid_override,
            }
        )
        if known_fingerprint is not None and known_fingerprint == current:
            return RenderResult(payload=None, fingerprint=current, plugins=plugins)

        try:
            parsed = json.loads(text)
        except ValueError as exc:
            raise RenderError(f"invalid dashboard JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise RenderError("dashboard JSON must be an object")

        payload = dict(parsed)
        # Updates are matched by uid only; exported numeric ids are dropped.
        payload.pop("id", None)
        uid = uid_override or str(payload.get("uid") or "").strip()
        if not uid:
            uid = default_uid(resource.namespace, resource.name)
        if len(uid) > MAX_UID_LENGTH:
            raise RenderError(f"dashboard uid {uid!r} exceeds {MAX_UID_LENGTH} characters")
        payload["uid"] = uid
        payload.setdefault("title", resource.name)

        LOGGER.debug(
            "Rendered dashboard %s/%s (uid=%s)", resource.namespace, resource.name, uid
        )
        return RenderResult(payload=payload, fingerprint=current, plugins=plugins)
