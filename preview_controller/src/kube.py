from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeSession:
    """API clients sharing the process-wide kube configuration.

    Built once at startup and passed explicitly to the gateway and the watch
    loop so tests can substitute fakes.
    """

    core: CoreV1Api
    apps: AppsV1Api
    custom: CustomObjectsApi


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development. A failure of the fallback is
    fatal and propagates to the caller.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_session() -> KubeSession:
    """Return API clients using the active kube configuration."""
    return KubeSession(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        custom=client.CustomObjectsApi(),
    )
