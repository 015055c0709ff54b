from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class InvalidResourceError(ValueError):
    """Raised when a watched object cannot be read as a PreviewEnvironment."""


@dataclass(frozen=True)
class PreviewEnvironment:
    """A snapshot of one ``PreviewEnvironment`` custom resource.

    The controller never writes these; it only reads the fields it needs to
    derive dependent resources.
    """

    name: str
    namespace: str
    resource_version: str | None
    image: str
    fqdn: str

    @classmethod
    def from_object(cls, obj: Any) -> PreviewEnvironment:
        """Parse a custom-object dict as returned by ``CustomObjectsApi``."""
        if not isinstance(obj, dict):
            raise InvalidResourceError(f"Expected a mapping, got {type(obj).__name__}")

        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidResourceError("PreviewEnvironment is missing metadata.name")

        spec = obj.get("spec") or {}
        return cls(
            name=name,
            namespace=str(metadata.get("namespace") or ""),
            resource_version=metadata.get("resourceVersion"),
            image=str(spec.get("image") or ""),
            fqdn=str(spec.get("fqdn") or ""),
        )


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class ReconcileEvent:
    """One lifecycle event handed from the watch loop to the reconciler."""

    type: EventType
    resource: PreviewEnvironment | None = None
    cause: Any = None

    @classmethod
    def added(cls, resource: PreviewEnvironment) -> ReconcileEvent:
        return cls(EventType.ADDED, resource=resource)

    @classmethod
    def modified(cls, resource: PreviewEnvironment) -> ReconcileEvent:
        return cls(EventType.MODIFIED, resource=resource)

    @classmethod
    def deleted(cls, resource: PreviewEnvironment) -> ReconcileEvent:
        return cls(EventType.DELETED, resource=resource)

    @classmethod
    def error(cls, cause: Any) -> ReconcileEvent:
        return cls(EventType.ERROR, cause=cause)


def event_from_watch(raw: dict[str, Any]) -> ReconcileEvent | None:
    """Convert a raw ``kubernetes.watch`` event into a :class:`ReconcileEvent`.

    Returns ``None`` for event types the reconciler does not act on
    (``BOOKMARK`` and anything unknown). Raises :class:`InvalidResourceError`
    when a lifecycle event carries an unreadable object.
    """
    event_type = str(raw.get("type", ""))
    obj = raw.get("object")

    if event_type == EventType.ERROR.value:
        return ReconcileEvent.error(obj if obj is not None else raw.get("raw_object"))

    try:
        kind = EventType(event_type)
    except ValueError:
        return None

    return ReconcileEvent(kind, resource=PreviewEnvironment.from_object(obj))
