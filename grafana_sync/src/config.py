from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from grafana_sync.src.selectors import LabelSelector, parse_selector_list
from grafana_sync.src.state import ControllerState


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded at startup.

    ``watch_namespaces`` is empty when every namespace is watched.
    ``dashboard_selectors`` is an empty tuple when ``DASHBOARD_SELECTORS`` is
    explicitly set to an empty string, which makes the controller manage
    nothing.
    """

    grafana_url: str
    grafana_username: str
    grafana_password: str
    grafana_timeout_seconds: float = 10.0
    watch_namespaces: tuple[str, ...] = ()
    dashboard_selectors: tuple[LabelSelector, ...] = ()
    namespace_selector: LabelSelector | None = None
    resync_period_seconds: int = 60
    requeue_delay_seconds: int = 10
    readiness_probe_enabled: bool = True
    readiness_probe_period_seconds: int = 10
    health_port: int = 8080

    def initial_state(self) -> ControllerState:
        """Return the first state snapshot.

        With the readiness probe disabled Grafana is assumed ready from the
        start; otherwise the probe flips readiness on its first success.
        """
        return ControllerState(
            ready=not self.readiness_probe_enabled,
            base_url=self.grafana_url,
            username=self.grafana_username,
            password=self.grafana_password,
            timeout_seconds=self.grafana_timeout_seconds,
            dashboard_selectors=self.dashboard_selectors,
            namespace_selector=self.namespace_selector,
        )

    def __repr__(self) -> str:
        return (
            f"ControllerSettings(grafana_url={self.grafana_url!r}, "
            f"watch_namespaces={self.watch_namespaces!r}, "
            f"resync_period_seconds={self.resync_period_seconds})"
        )


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(values: Mapping[str, str], name: str, default: float, *, minimum: float) -> float:
    raw = values.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load controller settings from the environment.

    Environment variables (with defaults):
        ``GRAFANA_URL``                    Grafana base URL (required).
        ``GRAFANA_USERNAME``               Basic-auth user (``admin``).
        ``GRAFANA_PASSWORD``               Basic-auth password (required).
        ``GRAFANA_TIMEOUT_SECONDS``        Timeout for every external call (``10``).
        ``WATCH_NAMESPACES``               Comma-separated namespaces, empty for all.
        ``DASHBOARD_SELECTORS``            ``;``-separated label selectors (``app=grafana``).
        ``DASHBOARD_NAMESPACE_SELECTOR``   Namespace label selector (unset disables).
        ``RESYNC_PERIOD_SECONDS``          Full resync period (``60``).
        ``REQUEUE_DELAY_SECONDS``          Delay for not-ready requeues (``10``).
        ``READINESS_PROBE_ENABLED``        Poll Grafana health (``true``).
        ``READINESS_PROBE_PERIOD_SECONDS`` Probe period (``10``).
        ``HEALTH_PORT``                    Health/metrics port (``8080``).
    """
    values = env if env is not None else os.environ

    grafana_url = values.get("GRAFANA_URL", "").strip().rstrip("/")
    if not grafana_url:
        raise ConfigError("GRAFANA_URL must be set to the Grafana base URL")
    if not grafana_url.startswith(("http://", "https://")):
        raise ConfigError(f"GRAFANA_URL must be an http(s) URL, got: {grafana_url!r}")

    grafana_password = values.get("GRAFANA_PASSWORD", "")
    if not grafana_password:
        raise ConfigError("GRAFANA_PASSWORD must be set")
    grafana_username = values.get("GRAFANA_USERNAME", "admin").strip()
    if not grafana_username:
        raise ConfigError("GRAFANA_USERNAME must be a non-empty string")

    watch_namespaces = tuple(
        ns.strip() for ns in values.get("WATCH_NAMESPACES", "").split(",") if ns.strip()
    )

    try:
        dashboard_selectors = parse_selector_list(values.get("DASHBOARD_SELECTORS", "app=grafana"))
        raw_ns_selector = values.get("DASHBOARD_NAMESPACE_SELECTOR")
        namespace_selector = (
            LabelSelector.parse(raw_ns_selector) if raw_ns_selector is not None else None
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid label selector: {exc}") from exc

    try:
        settings = ControllerSettings(
            grafana_url=grafana_url,
            grafana_username=grafana_username,
            grafana_password=grafana_password,
            grafana_timeout_seconds=env_float(
                values, "GRAFANA_TIMEOUT_SECONDS", 10.0, minimum=0.1
            ),
            watch_namespaces=watch_namespaces,
            dashboard_selectors=dashboard_selectors,
            namespace_selector=namespace_selector,
            resync_period_seconds=env_int(values, "RESYNC_PERIOD_SECONDS", 60, minimum=1),
            requeue_delay_seconds=env_int(values, "REQUEUE_DELAY_SECONDS", 10, minimum=1),
            readiness_probe_enabled=parse_bool(
                values.get("READINESS_PROBE_ENABLED"), default=True
            ),
            readiness_probe_period_seconds=env_int(
                values, "READINESS_PROBE_PERIOD_SECONDS", 10, minimum=1
            ),
            health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    return settings
