from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from preview_controller.src.config import ControllerConfig, load_config
from preview_controller.src.gateway import build_gateway
from preview_controller.src.health import start_health_server
from preview_controller.src.kube import KubeSession, build_session, load_kube_configuration
from preview_controller.src.metrics import METRICS
from preview_controller.src.reconciler import Reconciler
from preview_controller.src.watcher import SubscriptionError, WatchLoop

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def build_controller(session: KubeSession, config: ControllerConfig) -> WatchLoop:
    """Wire gateway, reconciler and watch loop for one namespace."""
    reconciler = Reconciler(
        gateway=build_gateway(session, config),
        base_domain=config.base_domain,
        default_image=config.default_image,
        mapping_api_version=f"{config.mapping_group}/{config.mapping_version}",
        transient_retries=config.transient_retries,
    )
    return WatchLoop(
        custom_api=session.custom,
        reconciler=reconciler,
        namespace=config.namespace,
        group=config.preview_group,
        version=config.preview_version,
        plural=config.preview_plural,
        watch_timeout_seconds=config.watch_timeout_seconds,
        max_consecutive_failures=config.max_consecutive_failures,
    )


def main() -> None:
    """Controller entrypoint: configure logging, open a kube session, and run the watch loop."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration()
    session = build_session()
    controller = build_controller(session, config)

    health_server = start_health_server(ready=controller.ready, port=config.health_port)
    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    except SubscriptionError:
        logger.exception("Giving up on the PreviewEnvironment watch")
        raise SystemExit(1) from None
    finally:
        health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
