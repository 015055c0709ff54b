from __future__ import annotations

from typing import Any

from kubernetes.client import (
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)

PREVIEW_LABELS = {"preview": "true"}
HTTP_PORT = 80
MAPPING_API_VERSION = "getambassador.io/v2"


class InvalidDocumentError(ValueError):
    """Raised when a desired-state document cannot be built from its inputs."""


def _require(field_name: str, value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidDocumentError(f"{field_name} must be a non-empty string, got: {value!r}")
    return value


def build_deployment(name: str, image: str) -> V1Deployment:
    """Return a single-replica Deployment running *image* in a container named *name*.

    Pods are selected and labelled with ``app=<name>``; the Deployment object
    itself carries ``preview=true`` so operators can list every preview
    workload with one selector.
    """
    _require("name", name)
    _require("image", image)

    app_labels = {"app": name}
    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(name=name, labels=dict(PREVIEW_LABELS)),
        spec=V1DeploymentSpec(
            replicas=1,
            selector=V1LabelSelector(match_labels=dict(app_labels)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=dict(app_labels)),
                spec=V1PodSpec(
                    containers=[
                        V1Container(
                            name=name,
                            image=image,
                            ports=[V1ContainerPort(container_port=HTTP_PORT, protocol="TCP")],
                        )
                    ]
                ),
            ),
        ),
    )


def build_service(name: str, app: str | None = None) -> V1Service:
    """Return a ClusterIP Service exposing TCP port 80.

    The selector is ``app=<app>``, defaulting to ``app=<name>``. Pass the
    deployment name as *app* to route to the pods of :func:`build_deployment`.
    """
    _require("name", name)
    selector_app = _require("app", app) if app is not None else name

    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(name=name, labels=dict(PREVIEW_LABELS)),
        spec=V1ServiceSpec(
            type="ClusterIP",
            selector={"app": selector_app},
            ports=[V1ServicePort(protocol="TCP", port=HTTP_PORT)],
        ),
    )


def build_mapping(
    name: str,
    host: str,
    service_name: str,
    prefix: str = "/",
    api_version: str = MAPPING_API_VERSION,
) -> dict[str, Any]:
    """Return an Ambassador ``Mapping`` routing ``host`` + ``prefix`` to *service_name*.

    Mappings are custom objects, so the document is a plain dict in the shape
    ``CustomObjectsApi`` expects rather than a generated model.
    """
    _require("name", name)
    _require("host", host)
    _require("service_name", service_name)

    return {
        "apiVersion": api_version,
        "kind": "Mapping",
        "metadata": {
            "name": name,
            "labels": dict(PREVIEW_LABELS),
        },
        "spec": {
            "host": host,
            "prefix": prefix,
            "service": service_name,
        },
    }
