from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace

from grafana_sync.src.metrics import METRICS
from grafana_sync.src.selectors import LabelSelector

LOGGER = logging.getLogger(__name__)

StateListener = Callable[["ControllerState", "ControllerState"], None]


@dataclass(frozen=True)
class ControllerState:
    """Read-only snapshot of everything the reconciler needs from outside.

    Attributes:
        ready:               Grafana is reachable and healthy.
        base_url:            Grafana base URL, e.g. ``http://grafana:3000``.
        username / password: Grafana basic-auth credentials.
        timeout_seconds:     Timeout applied to every external call.
        dashboard_selectors: Resource-level selectors.  ``None`` means not
                             initialised yet; an empty tuple matches nothing.
        namespace_selector:  Namespace-level selector, ``None`` disables the check.
    """

    ready: bool = False
    base_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: float = 10.0
    dashboard_selectors: tuple[LabelSelector, ...] | None = None
    namespace_selector: LabelSelector | None = None

    def __repr__(self) -> str:
        return (
            f"ControllerState(ready={self.ready}, base_url={self.base_url!r}, "
            f"username={self.username!r}, timeout_seconds={self.timeout_seconds})"
        )


class StateHolder:
    """Holds the current :class:`ControllerState` and swaps it atomically.

    Readers call :meth:`current` once per request and use that snapshot for
    the whole pass, so a swap mid-pass never mixes old and new values.
    Listeners are invoked outside the lock with ``(previous, current)``
    whenever readiness flips.
    """

    def __init__(self, initial: ControllerState | None = None) -> None:
        self._lock = threading.Lock()
        self._state = initial or ControllerState()
        self._listeners: list[StateListener] = []
        METRICS.grafana_ready.set(1 if self._state.ready else 0)

    def current(self) -> ControllerState:
        with self._lock:
            return self._state

    def subscribe(self, listener: StateListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def replace(self, state: ControllerState) -> ControllerState:
        """Swap in a whole new snapshot and return the previous one."""
        with self._lock:
            previous = self._state
            self._state = state
            listeners = list(self._listeners)
        self._notify(previous, state, listeners)
        return previous

    def set_ready(self, ready: bool) -> None:
        """Flip only the readiness flag, keeping every other field of the latest snapshot."""
        with self._lock:
            previous = self._state
            if previous.ready == ready:
                return
            updated = replace(previous, ready=ready)
            self._state = updated
            listeners = list(self._listeners)
        self._notify(previous, updated, listeners)

    @staticmethod
    def _notify(
        previous: ControllerState,
        current: ControllerState,
        listeners: list[StateListener],
    ) -> None:
        if previous.ready == current.ready:
            return
        METRICS.grafana_ready.set(1 if current.ready else 0)
        LOGGER.info("Grafana readiness changed: ready=%s", current.ready)
        for listener in listeners:
            try:
                listener(previous, current)
            except Exception:
                LOGGER.exception("State listener failed")
