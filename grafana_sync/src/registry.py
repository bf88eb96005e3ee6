from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, replace

from grafana_sync.src.metrics import METRICS


@dataclass(frozen=True)
class RegistryEntry:
    """What the controller last pushed to Grafana for one dashboard resource."""

    namespace: str
    name: str
    fingerprint: str
    uid: str
    plugins: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)


class Registry:
    """In-memory catalog of dashboards applied to Grafana.

    An entry exists if and only if the dashboard is believed present in
    Grafana, so callers only write after the corresponding Grafana call has
    succeeded.  All operations are idempotent.

    Two kinds of locking are involved:

    ``_lock``
        Guards the dictionaries for the duration of a single read or write.
        It is never held across a Grafana or Kubernetes call.
    ``namespace_lock(namespace)``
        One lock per namespace, held by the reconciler for a whole pass so
        that at most one pass per namespace is in flight while passes for
        different namespaces stay independent.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, RegistryEntry]] = {}
        self._synced: set[str] = set()
        self._namespace_locks: dict[str, threading.Lock] = {}
        METRICS.registry_entries.set(0)

    def namespace_lock(self, namespace: str) -> threading.Lock:
        with self._lock:
            lock = self._namespace_locks.get(namespace)
            if lock is None:
                lock = threading.Lock()
                self._namespace_locks[namespace] = lock
            return lock

    def dashboards_in(self, namespace: str) -> frozenset[RegistryEntry]:
        with self._lock:
            return frozenset(self._entries.get(namespace, {}).values())

    def get(self, namespace: str, name: str) -> RegistryEntry | None:
        with self._lock:
            return self._entries.get(namespace, {}).get(name)

    def has(self, namespace: str, name: str) -> str | None:
        """Return the last-applied fingerprint, or ``None`` if never applied."""
        entry = self.get(namespace, name)
        return entry.fingerprint if entry is not None else None

    def put(self, entry: RegistryEntry) -> None:
        with self._lock:
            self._entries.setdefault(entry.namespace, {})[entry.name] = entry
            self._update_gauge()

    def set_plugins(self, namespace: str, name: str, plugins: Iterable[str]) -> None:
        """Refresh the plugin metadata of an existing entry without touching its fingerprint."""
        with self._lock:
            entry = self._entries.get(namespace, {}).get(name)
            if entry is None:
                return
            self._entries[namespace][name] = replace(entry, plugins=tuple(plugins))

    def remove(self, namespace: str, name: str) -> RegistryEntry | None:
        with self._lock:
            bucket = self._entries.get(namespace)
            if bucket is None:
                return None
            entry = bucket.pop(name, None)
            if not bucket:
                del self._entries[namespace]
            self._update_gauge()
            return entry

    def mark_synced(self, namespace: str) -> None:
        with self._lock:
            self._synced.add(namespace)

    def is_synced(self, namespace: str) -> bool:
        with self._lock:
            return namespace in self._synced

    def synced_namespaces(self) -> list[str]:
        with self._lock:
            return sorted(self._synced)

    def namespaces(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def required_plugins(self) -> list[str]:
        """Return the sorted union of plugins referenced by applied dashboards."""
        with self._lock:
            plugins = {
                plugin
                for bucket in self._entries.values()
                for entry in bucket.values()
                for plugin in entry.plugins
            }
        return sorted(plugins)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._entries.values())

    def _update_gauge(self) -> None:
        METRICS.registry_entries.set(sum(len(bucket) for bucket in self._entries.values()))
