from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from preview_controller.src.config import ControllerConfig
from preview_controller.src.kube import KubeSession

LOGGER = logging.getLogger(__name__)

PROPAGATION_POLICY = "Background"


class GatewayError(Exception):
    """A create or delete call against the cluster API failed."""

    def __init__(self, kind: str, name: str, status: int | None = None, reason: str = "") -> None:
        self.kind = kind
        self.name = name
        self.status = status
        self.reason = reason
        detail = f" (status={status})" if status is not None else ""
        super().__init__(f"{kind} {name}: {reason or 'request failed'}{detail}")


class AlreadyExistsError(GatewayError):
    """The resource being created is already present."""


class NotFoundError(GatewayError):
    """The resource being deleted (or its collection) does not exist."""


class TransientError(GatewayError):
    """Network failure, throttling or a server-side error; worth retrying."""


class RejectedError(GatewayError):
    """The API server refused the document (schema or validation failure)."""


class AccessDeniedError(GatewayError):
    """Authentication or RBAC failure; retrying will not help."""


_STATUS_ERRORS: dict[int, type[GatewayError]] = {
    400: RejectedError,
    401: AccessDeniedError,
    403: AccessDeniedError,
    404: NotFoundError,
    409: AlreadyExistsError,
    422: RejectedError,
    429: TransientError,
}


def error_for_status(kind: str, name: str, status: int | None, reason: str = "") -> GatewayError:
    """Map an HTTP status from the API server to the gateway error taxonomy."""
    if status is None or status == 0 or status >= 500:
        return TransientError(kind, name, status=status, reason=reason)
    error_cls = _STATUS_ERRORS.get(status, GatewayError)
    return error_cls(kind, name, status=status, reason=reason)


@contextmanager
def _translate_errors(kind: str, name: str) -> Iterator[None]:
    try:
        yield
    except ApiException as exc:
        raise error_for_status(kind, name, exc.status, str(exc.reason or "")) from exc
    except Urllib3HTTPError as exc:
        raise TransientError(kind, name, reason=str(exc)) from exc


def document_name(document: Any) -> str:
    """Return ``metadata.name`` from a generated model or a plain dict document."""
    if isinstance(document, dict):
        return str((document.get("metadata") or {}).get("name") or "")
    metadata = getattr(document, "metadata", None)
    return str(getattr(metadata, "name", None) or "")


class ResourceCollection(Protocol):
    kind: str

    def create(self, document: Any) -> Any: ...

    def delete(self, name: str) -> None: ...


class DeploymentCollection:
    kind = "Deployment"

    def __init__(self, apps_api: AppsV1Api, namespace: str) -> None:
        self.apps_api = apps_api
        self.namespace = namespace

    def create(self, document: Any) -> Any:
        with _translate_errors(self.kind, document_name(document)):
            return self.apps_api.create_namespaced_deployment(
                namespace=self.namespace,
                body=document,
            )

    def delete(self, name: str) -> None:
        with _translate_errors(self.kind, name):
            self.apps_api.delete_namespaced_deployment(
                name=name,
                namespace=self.namespace,
                propagation_policy=PROPAGATION_POLICY,
            )


class ServiceCollection:
    kind = "Service"

    def __init__(self, core_api: CoreV1Api, namespace: str) -> None:
        self.core_api = core_api
        self.namespace = namespace

    def create(self, document: Any) -> Any:
        with _translate_errors(self.kind, document_name(document)):
            return self.core_api.create_namespaced_service(
                namespace=self.namespace,
                body=document,
            )

    def delete(self, name: str) -> None:
        with _translate_errors(self.kind, name):
            self.core_api.delete_namespaced_service(
                name=name,
                namespace=self.namespace,
                propagation_policy=PROPAGATION_POLICY,
            )


class MappingCollection:
    """Ambassador ``Mapping`` objects, reached through the custom objects API."""

    kind = "Mapping"

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        namespace: str,
        group: str = "getambassador.io",
        version: str = "v2",
        plural: str = "mappings",
    ) -> None:
        self.custom_api = custom_api
        self.namespace = namespace
        self.group = group
        self.version = version
        self.plural = plural

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def create(self, document: Any) -> Any:
        with _translate_errors(self.kind, document_name(document)):
            return self.custom_api.create_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural=self.plural,
                body=document,
            )

    def delete(self, name: str) -> None:
        with _translate_errors(self.kind, name):
            self.custom_api.delete_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=self.namespace,
                plural=self.plural,
                name=name,
                propagation_policy=PROPAGATION_POLICY,
            )


@dataclass(frozen=True)
class ClusterGateway:
    """The three namespaced collections the reconciler writes to."""

    deployments: ResourceCollection
    services: ResourceCollection
    mappings: ResourceCollection


def build_gateway(session: KubeSession, config: ControllerConfig) -> ClusterGateway:
    LOGGER.info("Cluster gateway targeting namespace %s", config.namespace)
    return ClusterGateway(
        deployments=DeploymentCollection(session.apps, config.namespace),
        services=ServiceCollection(session.core, config.namespace),
        mappings=MappingCollection(
            session.custom,
            config.namespace,
            group=config.mapping_group,
            version=config.mapping_version,
            plural=config.mapping_plural,
        ),
    )
