from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from grafana_sync.src.config import ConfigError, load_settings
from grafana_sync.src.controller import build_controller
from grafana_sync.src.health import start_health_server
from grafana_sync.src.kube import build_clients, load_kube_configuration
from grafana_sync.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
# Record attributes passed through ``extra=`` that are copied into the JSON line.
_CONTEXT_FIELDS = ("namespace", "dashboard")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+|basic\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(https?://)([^/\s:@]+):([^/\s@]+)@"),
        r"\1\2:[REDACTED]@",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str | None = None) -> None:
    log_level = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, load settings, and run the dashboard controller."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)
    logger.info("Loaded settings: %r", settings)

    load_kube_configuration()
    core_api, custom_api = build_clients()

    controller = build_controller(settings, core_api=core_api, custom_api=custom_api)
    health_server = start_health_server(
        ready=controller.ready,
        port=settings.health_port,
        status_fn=controller.status,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
