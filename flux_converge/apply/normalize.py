"""Normalization of rendered resources into a canonical form.

Rendered documents are compared against the live state field by field, so
cosmetic differences like key order or an omitted namespace must not show up
as changes.
"""

import copy
import logging
from typing import Any

from flux_converge.exceptions import BuildException
from flux_converge.manifest import CLUSTER_SCOPED_KINDS, CommonMetadata

__all__ = [
    "normalize_resources",
    "set_common_metadata",
]

_LOGGER = logging.getLogger(__name__)

# Metadata populated by the server that must never be applied.
SERVER_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "managedFields",
    "selfLink",
)


def _sorted(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _sorted(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_sorted(v) for v in value]
    return value


def normalize_resource(doc: dict[str, Any], default_namespace: str) -> dict[str, Any]:
    """Return a normalized copy of a single resource document."""
    if not isinstance(doc, dict):
        raise BuildException(f"Invalid resource, expected a mapping: {doc!r}")
    if not doc.get("apiVersion") or not doc.get("kind"):
        raise BuildException(f"Invalid resource missing apiVersion or kind: {doc}")
    result = copy.deepcopy(doc)
    metadata = result.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise BuildException(
            f"Invalid resource {result['kind']} missing metadata.name"
        )
    for key in SERVER_METADATA_FIELDS:
        metadata.pop(key, None)
    result.pop("status", None)

    if result["kind"] in CLUSTER_SCOPED_KINDS:
        metadata.pop("namespace", None)
    elif not metadata.get("namespace"):
        metadata["namespace"] = default_namespace

    for section in ("labels", "annotations"):
        if (values := metadata.get(section)) is None:
            continue
        if not isinstance(values, dict):
            raise BuildException(
                f"Invalid resource {result['kind']}/{metadata['name']} {section}"
            )
        for key, value in values.items():
            if not isinstance(value, str):
                raise BuildException(
                    f"Invalid resource {result['kind']}/{metadata['name']} "
                    f"{section} {key} must be a string"
                )
    return _sorted(result)


def normalize_resources(
    docs: list[dict[str, Any]], default_namespace: str
) -> list[dict[str, Any]]:
    """Normalize all resources, raising BuildException on the first invalid one."""
    return [normalize_resource(doc, default_namespace) for doc in docs]


def set_common_metadata(
    docs: list[dict[str, Any]], common: CommonMetadata | None
) -> None:
    """Add the common labels and annotations to every resource."""
    if common is None:
        return
    for doc in docs:
        metadata = doc.setdefault("metadata", {})
        if common.labels:
            metadata.setdefault("labels", {}).update(common.labels)
        if common.annotations:
            metadata.setdefault("annotations", {}).update(common.annotations)
