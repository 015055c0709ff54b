from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from preview_controller.src.gateway import (
    AlreadyExistsError,
    ClusterGateway,
    GatewayError,
    NotFoundError,
    ResourceCollection,
    TransientError,
)
from preview_controller.src.metrics import METRICS
from preview_controller.src.model import EventType, PreviewEnvironment, ReconcileEvent
from preview_controller.src.naming import derive_host, derive_names
from preview_controller.src.resources import (
    MAPPING_API_VERSION,
    InvalidDocumentError,
    build_deployment,
    build_mapping,
    build_service,
)

MAX_RETRY_DELAY_SECONDS = 30.0


class Outcome(str, Enum):
    CREATED = "created"
    DELETED = "deleted"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    INVALID = "invalid"


_UNSUCCESSFUL = frozenset({Outcome.FAILED, Outcome.INVALID})


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one create or delete against a dependent resource."""

    kind: str
    name: str
    operation: str
    outcome: Outcome
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome not in _UNSUCCESSFUL


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of everything done for a single watch event.

    Returned by every :meth:`Reconciler.reconcile` call so callers and tests
    can inspect outcomes without querying the Kubernetes API again.
    """

    event_type: EventType
    source_name: str | None
    actions: tuple[ActionResult, ...] = ()

    @property
    def failed(self) -> int:
        return sum(1 for action in self.actions if not action.succeeded)

    @property
    def succeeded(self) -> bool:
        return self.failed == 0


class Reconciler:
    """Drives dependent resources toward the state implied by one event.

    The reconciler keeps no state between events. Dependents are located
    purely by derived name, so replaying an ``ADDED`` event after a restart
    converges through ``AlreadyExists`` responses, and a ``DELETED`` event for
    a resource that was never reconciled converges through ``NotFound``.

    Each event runs its actions sequentially and every action is attempted
    regardless of how the previous one ended:

        ADDED     create Deployment, Service, Mapping
        MODIFIED  logged only
        DELETED   delete Service, Deployment, Mapping
        ERROR     logged only

    ``TransientError`` from a single call is retried up to
    ``transient_retries`` times with bounded exponential backoff; any other
    non-benign error is logged and recorded as ``failed``.
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        base_domain: str,
        default_image: str,
        *,
        mapping_api_version: str = MAPPING_API_VERSION,
        transient_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        logger: logging.Logger | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        if transient_retries < 0:
            raise ValueError("transient_retries must be >= 0")
        self.gateway = gateway
        self.base_domain = base_domain
        self.default_image = default_image
        self.mapping_api_version = mapping_api_version
        self.transient_retries = transient_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.sleep_fn = sleep_fn

    def reconcile(self, event: ReconcileEvent) -> ReconcileResult:
        METRICS.events_total.labels(type=event.type.value).inc()

        if event.type is EventType.ERROR:
            self.logger.warning("Watch reported an error event: %s", event.cause)
            return ReconcileResult(event_type=event.type, source_name=None)

        resource = event.resource
        if resource is None:
            raise ValueError(f"{event.type.value} event carries no PreviewEnvironment")

        if event.type is EventType.ADDED:
            actions = self._handle_added(resource)
        elif event.type is EventType.DELETED:
            actions = self._handle_deleted(resource)
        else:
            self.logger.info(
                "Modified PreviewEnvironment %s (resourceVersion=%s); no action taken",
                resource.name,
                resource.resource_version,
            )
            actions = ()

        result = ReconcileResult(event_type=event.type, source_name=resource.name, actions=actions)
        if result.failed:
            self.logger.error(
                "Reconciled %s event for %s with %d failed action(s)",
                event.type.value,
                resource.name,
                result.failed,
            )
        return result

    def _handle_added(self, resource: PreviewEnvironment) -> tuple[ActionResult, ...]:
        names = derive_names(resource.name)
        host = derive_host(resource.name, self.base_domain)
        image = resource.image or self.default_image
        self.logger.info(
            "Add PreviewEnvironment %s (image=%s, host=%s, requested fqdn=%s)",
            resource.name,
            image,
            host,
            resource.fqdn or "<unset>",
        )

        return (
            self._create(
                self.gateway.deployments,
                names.deployment,
                lambda: build_deployment(names.deployment, image),
            ),
            self._create(
                self.gateway.services,
                names.service,
                lambda: build_service(names.service, app=names.deployment),
            ),
            self._create(
                self.gateway.mappings,
                names.mapping,
                lambda: build_mapping(
                    names.mapping,
                    host,
                    names.service,
                    api_version=self.mapping_api_version,
                ),
            ),
        )

    def _handle_deleted(self, resource: PreviewEnvironment) -> tuple[ActionResult, ...]:
        names = derive_names(resource.name)
        self.logger.info("Deleted PreviewEnvironment %s", resource.name)

        # Order is service, deployment, mapping; best-effort, not transactional.
        return (
            self._delete(self.gateway.services, names.service),
            self._delete(self.gateway.deployments, names.deployment),
            self._delete(self.gateway.mappings, names.mapping),
        )

    def _create(
        self,
        collection: ResourceCollection,
        name: str,
        build: Callable[[], Any],
    ) -> ActionResult:
        kind = collection.kind
        try:
            document = build()
        except InvalidDocumentError as exc:
            self.logger.error("Skipping create of %s %s: %s", kind, name, exc)
            return self._record(kind, name, "create", Outcome.INVALID, error=str(exc))

        try:
            self._call_with_retry(kind, name, "create", lambda: collection.create(document))
        except AlreadyExistsError:
            self.logger.info("%s %s already exists; treating as reconciled", kind, name)
            return self._record(kind, name, "create", Outcome.ALREADY_EXISTS)
        except GatewayError as exc:
            self.logger.error("Failed to create %s %s: %s", kind, name, exc)
            return self._record(kind, name, "create", Outcome.FAILED, error=str(exc))
        except Exception as exc:
            self.logger.exception("Unexpected error creating %s %s", kind, name)
            return self._record(kind, name, "create", Outcome.FAILED, error=repr(exc))

        self.logger.info("Created %s %s", kind, name)
        return self._record(kind, name, "create", Outcome.CREATED)

    def _delete(self, collection: ResourceCollection, name: str) -> ActionResult:
        kind = collection.kind
        try:
            self._call_with_retry(kind, name, "delete", lambda: collection.delete(name))
        except NotFoundError:
            self.logger.info("%s %s not found; treating as deleted", kind, name)
            return self._record(kind, name, "delete", Outcome.NOT_FOUND)
        except GatewayError as exc:
            self.logger.error("Failed to delete %s %s: %s", kind, name, exc)
            return self._record(kind, name, "delete", Outcome.FAILED, error=str(exc))
        except Exception as exc:
            self.logger.exception("Unexpected error deleting %s %s", kind, name)
            return self._record(kind, name, "delete", Outcome.FAILED, error=repr(exc))

        self.logger.info("Deleted %s %s", kind, name)
        return self._record(kind, name, "delete", Outcome.DELETED)

    def _call_with_retry(
        self,
        kind: str,
        name: str,
        operation: str,
        call: Callable[[], Any],
    ) -> Any:
        attempt = 0
        while True:
            try:
                return call()
            except TransientError as exc:
                if attempt >= self.transient_retries:
                    raise
                delay_seconds = min(
                    MAX_RETRY_DELAY_SECONDS, self.retry_backoff_seconds * (2**attempt)
                )
                attempt += 1
                METRICS.action_retries_total.labels(kind=kind).inc()
                self.logger.warning(
                    "Transient error during %s of %s %s (%s); retry %d/%d in %.1fs",
                    operation,
                    kind,
                    name,
                    exc,
                    attempt,
                    self.transient_retries,
                    delay_seconds,
                )
                self.sleep_fn(delay_seconds)

    @staticmethod
    def _record(
        kind: str,
        name: str,
        operation: str,
        outcome: Outcome,
        error: str | None = None,
    ) -> ActionResult:
        METRICS.actions_total.labels(kind=kind, operation=operation, outcome=outcome.value).inc()
        return ActionResult(kind=kind, name=name, operation=operation, outcome=outcome, error=error)
