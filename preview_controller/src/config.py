from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:       Namespace holding both the PreviewEnvironments and
                         their dependent resources.
        base_domain:     Suffix for derived hostnames (``<name>.<base_domain>``).
        default_image:   Container image used when a PreviewEnvironment does
                         not set ``spec.image``.
        preview_*:       Coordinates of the watched custom resource.
        mapping_*:       Coordinates of the Ambassador ``Mapping`` resource.
    """

    namespace: str = "default"
    base_domain: str = "preview.local"
    default_image: str = "nginx"
    preview_group: str = "platform9.com"
    preview_version: str = "v1"
    preview_plural: str = "previewenvironments"
    mapping_group: str = "getambassador.io"
    mapping_version: str = "v2"
    mapping_plural: str = "mappings"
    watch_timeout_seconds: int = 30
    max_consecutive_failures: int = 0
    transient_retries: int = 2
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_str(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``         : namespace to watch (``default``).
        ``BASE_DOMAIN``             : hostname suffix (``preview.local``).
        ``DEFAULT_CONTAINER_IMAGE`` : fallback image (``nginx``).
        ``PREVIEW_GROUP`` / ``PREVIEW_VERSION`` / ``PREVIEW_PLURAL``
        ``MAPPING_GROUP`` / ``MAPPING_VERSION`` / ``MAPPING_PLURAL``
        ``WATCH_TIMEOUT_SECONDS``   : server-side watch timeout (``30``).
        ``WATCH_MAX_CONSECUTIVE_FAILURES``: startup retry budget, ``0`` is unbounded.
        ``RECONCILE_TRANSIENT_RETRIES``   : retries per API call (``2``).
        ``HEALTH_PORT``             : health/metrics listener (``8080``).
    """
    values = env if env is not None else os.environ
    defaults = ControllerConfig()

    base_domain = _env_str(values, "BASE_DOMAIN", defaults.base_domain).strip(".")
    if not base_domain:
        raise ConfigError("BASE_DOMAIN must contain at least one label")

    return ControllerConfig(
        namespace=_env_str(values, "WATCH_NAMESPACE", defaults.namespace),
        base_domain=base_domain,
        default_image=_env_str(values, "DEFAULT_CONTAINER_IMAGE", defaults.default_image),
        preview_group=_env_str(values, "PREVIEW_GROUP", defaults.preview_group),
        preview_version=_env_str(values, "PREVIEW_VERSION", defaults.preview_version),
        preview_plural=_env_str(values, "PREVIEW_PLURAL", defaults.preview_plural),
        mapping_group=_env_str(values, "MAPPING_GROUP", defaults.mapping_group),
        mapping_version=_env_str(values, "MAPPING_VERSION", defaults.mapping_version),
        mapping_plural=_env_str(values, "MAPPING_PLURAL", defaults.mapping_plural),
        watch_timeout_seconds=env_int(
            "WATCH_TIMEOUT_SECONDS", defaults.watch_timeout_seconds, minimum=1, maximum=3600, env=values
        ),
        max_consecutive_failures=env_int(
            "WATCH_MAX_CONSECUTIVE_FAILURES", defaults.max_consecutive_failures, minimum=0, env=values
        ),
        transient_retries=env_int(
            "RECONCILE_TRANSIENT_RETRIES", defaults.transient_retries, minimum=0, maximum=10, env=values
        ),
        health_port=env_int("HEALTH_PORT", defaults.health_port, minimum=1, maximum=65535, env=values),
    )
