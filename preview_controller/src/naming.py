from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DependentNames:
    """Names of the three resources owned by convention by one PreviewEnvironment.

    Nothing links a dependent back to its source except this naming scheme, so
    creation and deletion must always go through :func:`derive_names`.
    """

    deployment: str
    service: str
    mapping: str


def derive_names(name: str) -> DependentNames:
    return DependentNames(
        deployment=f"{name}-deployment",
        service=f"{name}-service",
        mapping=f"{name}-mapping",
    )


def derive_host(name: str, base_domain: str) -> str:
    """Return the external hostname for a PreviewEnvironment (``pr42.preview.local``)."""
    return f"{name}.{base_domain}"
