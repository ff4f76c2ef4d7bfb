from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw.items()
        if isinstance(k, str)
    }


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key; keys without a slash have no namespace."""
    namespace, separator, name = key.partition("/")
    if not separator:
        return "", key
    return namespace, name


@dataclass
class ConfigMapResource:
    """Snapshot of a ConfigMap as seen by the reconciler.

    ``data`` is ``None`` when the ConfigMap carries no data at all; writers must
    initialize it before setting keys.  ``resource_version`` is owned by the
    API server and only ever passed back to it as a write precondition.
    """

    namespace: str
    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    data: dict[str, str] | None = None
    resource_version: str | None = None

    @property
    def key(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def from_kube(cls, obj: Any) -> ConfigMapResource:
        """Build a snapshot from a ``V1ConfigMap`` (or anything shaped like one)."""
        metadata = getattr(obj, "metadata", None)
        raw_data = getattr(obj, "data", None)
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            annotations=_string_map(getattr(metadata, "annotations", None)),
            data=_string_map(raw_data) if raw_data is not None else None,
            resource_version=getattr(metadata, "resource_version", None),
        )

    @classmethod
    def from_key(cls, key: str) -> ConfigMapResource:
        """Return a bare reference for *key*, used when only the key is known."""
        namespace, name = split_key(key)
        return cls(namespace=namespace, name=name)

    def deep_copy(self) -> ConfigMapResource:
        return copy.deepcopy(self)


@dataclass(frozen=True)
class AddNotification:
    """A ConfigMap appeared in the watched set."""

    resource: ConfigMapResource


@dataclass(frozen=True)
class UpdateNotification:
    """A ConfigMap already in the local store changed."""

    old: ConfigMapResource
    new: ConfigMapResource


Notification = AddNotification | UpdateNotification
