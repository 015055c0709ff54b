from __future__ import annotations

import logging
import random
import threading
from enum import Enum
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from preview_controller.src.metrics import METRICS
from preview_controller.src.model import InvalidResourceError, event_from_watch
from preview_controller.src.reconciler import Reconciler, ReconcileResult

MAX_BACKOFF_SECONDS = 30


class SubscriptionError(RuntimeError):
    """Raised when the watch could not be established within the failure budget."""


class ConnectionState(Enum):
    DISCONNECTED = 0
    CONNECTING = 1
    STREAMING = 2


class WatchLoop:
    """Keeps a PreviewEnvironment watch open and feeds events to the reconciler.

    The loop is an explicit reconnect state machine::

        DISCONNECTED -> CONNECTING -> STREAMING -> DISCONNECTED -> ...

    A stream that simply ends (the server-side ``timeout_seconds`` elapsed) is
    routine: the loop resubscribes immediately from the last seen
    ``resourceVersion``. ``410 Gone`` drops the stored version and resubscribes
    from scratch; the resulting ``ADDED`` replay is absorbed by idempotent
    creates. Any other failure is retried with jittered exponential backoff
    (1 s doubling to a 30 s cap), reset once a stream is established.

    Events are reconciled synchronously, in delivery order, one at a time. A
    failure while processing one event is logged and never stops consumption
    of the next.

    ``max_consecutive_failures`` bounds retries *before the first successful
    subscription* (``0`` means unbounded); once exhausted,
    :class:`SubscriptionError` is raised so the process can exit instead of
    running with a broken session.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        reconciler: Reconciler,
        namespace: str,
        group: str,
        version: str,
        plural: str,
        watch_timeout_seconds: int = 30,
        max_consecutive_failures: int = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.reconciler = reconciler
        self.namespace = namespace
        self.group = group
        self.version = version
        self.plural = plural
        self.watch_timeout_seconds = watch_timeout_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self.logger = logger or logging.getLogger(__name__)

        self.resource_version: str | None = None
        self.ready = threading.Event()
        self._state = ConnectionState.DISCONNECTED
        self._consecutive_failures = 0
        self._has_streamed = False
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        METRICS.watch_state.set(self._state.value)

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            self.logger.debug("Watch state %s -> %s", self._state.name, state.name)
        self._state = state
        METRICS.watch_state.set(state.value)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _subscribe(self, watcher: watch.Watch) -> Any:
        return watcher.stream(
            self.custom_api.list_namespaced_custom_object,
            group=self.group,
            version=self.version,
            namespace=self.namespace,
            plural=self.plural,
            resource_version=self.resource_version,
            timeout_seconds=self.watch_timeout_seconds,
        )

    def _mark_streaming(self) -> None:
        if self._state is ConnectionState.STREAMING:
            return
        self._set_state(ConnectionState.STREAMING)
        self._consecutive_failures = 0
        self._has_streamed = True
        self.ready.set()

    @staticmethod
    def _is_expired(raw: dict[str, Any]) -> bool:
        if raw.get("type") != "ERROR":
            return False
        obj = raw.get("object") or raw.get("raw_object")
        return isinstance(obj, dict) and obj.get("code") == 410

    def _track_resource_version(self, raw: dict[str, Any]) -> None:
        obj = raw.get("object")
        if raw.get("type") == "ERROR" or not isinstance(obj, dict):
            return
        resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        if resource_version:
            self.resource_version = resource_version

    def handle_event(self, raw: dict[str, Any]) -> ReconcileResult | None:
        """Reconcile one raw watch event; never raises.

        Returns the :class:`ReconcileResult`, or ``None`` when the event was
        skipped (bookmark, unknown type, unreadable object) or reconciliation
        raised unexpectedly.
        """
        self._track_resource_version(raw)

        try:
            event = event_from_watch(raw)
        except InvalidResourceError as exc:
            self.logger.warning("Skipping unreadable %s event: %s", raw.get("type"), exc)
            METRICS.event_errors_total.inc()
            return None

        if event is None:
            return None

        try:
            return self.reconciler.reconcile(event)
        except Exception:
            self.logger.exception("Failed to reconcile %s event", event.type.value)
            METRICS.event_errors_total.inc()
            return None

    def _backoff_after_failure(self, stop: threading.Event, backoff_seconds: int) -> int:
        """Record a failed subscription, wait out the backoff and return the next one."""
        METRICS.watch_errors_total.inc()
        self._consecutive_failures += 1
        if (
            not self._has_streamed
            and self.max_consecutive_failures > 0
            and self._consecutive_failures >= self.max_consecutive_failures
        ):
            raise SubscriptionError(
                f"Watch on {self.plural}.{self.group} in namespace {self.namespace} "
                f"failed {self._consecutive_failures} consecutive time(s) before streaming"
            )

        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Watch PreviewEnvironments until shutdown, reconciling each event in order."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._consecutive_failures = 0
        self._has_streamed = False

        backoff_seconds = 1
        subscription_count = 0
        self.logger.info(
            "Controller initialized; watching %s.%s/%s in namespace %s",
            self.plural,
            self.group,
            self.version,
            self.namespace,
        )

        try:
            while not self._should_stop(stop):
                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                self._set_state(ConnectionState.CONNECTING)
                try:
                    if subscription_count > 0:
                        METRICS.watch_reconnects_total.inc()
                    subscription_count += 1
                    self.logger.info(
                        "Subscribing from resourceVersion %s", self.resource_version
                    )

                    for raw in self._subscribe(watcher):
                        self._mark_streaming()
                        backoff_seconds = 1
                        if self._should_stop(stop):
                            break
                        if self._is_expired(raw):
                            self.logger.warning(
                                "Watch resource version expired, resubscribing from scratch"
                            )
                            self.resource_version = None
                            break
                        self.handle_event(raw)

                    # Exhaustion without an exception means the subscription
                    # itself worked; the server just closed it.
                    self._mark_streaming()
                    backoff_seconds = 1
                except ApiException as exc:
                    if exc.status == 410:
                        self.logger.warning(
                            "Watch resource version expired, resubscribing from scratch"
                        )
                        self.resource_version = None
                        continue

                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API watch denied (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            exc.status,
                        )
                    else:
                        self.logger.exception("Kubernetes API watch error")
                    backoff_seconds = self._backoff_after_failure(stop, backoff_seconds)
                except Exception:
                    self.logger.exception("Unexpected watch error")
                    backoff_seconds = self._backoff_after_failure(stop, backoff_seconds)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
                    self._set_state(ConnectionState.DISCONNECTED)
        finally:
            self.ready.clear()
            self._set_state(ConnectionState.DISCONNECTED)
            self.logger.info("Watch loop stopped")
