"""Computes the report of an installation from the objects in a store.

The report counts the objects of every reconciled kind: the kinds managed
here and any Flux toolkit kind found in the store. Operator kinds are always
listed, even when no object of the kind exists.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
import logging
from typing import Any

from .annotations import (
    DISABLED_VALUE,
    GROUP,
    RECONCILE_ANNOTATION,
    RECONCILE_REQUEST_ANNOTATION,
)
from .conditions import Reason
from .exceptions import InputException, ObjectNotFoundError
from .manifest import (
    API_VERSION,
    DEFAULT_INSTANCE_NAME,
    FLUX_INSTANCE_KIND,
    FLUX_REPORT_KIND,
    RESOURCE_GROUP_KIND,
    DistributionStatus,
    FluxInstance,
    ReconcilerStats,
    ReconcilerStatus,
    ResourceRef,
)
from .store import Store

__all__ = [
    "ResourceState",
    "Report",
    "resource_state",
    "format_size",
    "reconcilers_status",
    "distribution_status",
    "compute_report",
    "request_report_update",
]

_LOGGER = logging.getLogger(__name__)

TOOLKIT_GROUP_SUFFIX = ".toolkit.fluxcd.io"
OPERATOR_KINDS = [FLUX_INSTANCE_KIND, RESOURCE_GROUP_KIND]
SIZE_UNITS = "KMGTPE"


class ResourceState(StrEnum):
    """Summarized state of a reconciled object."""

    READY = "Ready"
    FAILED = "Failed"
    PROGRESSING = "Progressing"
    SUSPENDED = "Suspended"
    UNKNOWN = "Unknown"


@dataclass
class Report:
    """Result of a report computation."""

    distribution: DistributionStatus
    reconcilers: list[ReconcilerStatus] = field(default_factory=list)


def _is_suspended(doc: dict[str, Any]) -> bool:
    metadata = doc.get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    if str(annotations.get(RECONCILE_ANNOTATION, "")).lower() == DISABLED_VALUE:
        return True
    return (doc.get("spec") or {}).get("suspend") is True


def resource_state(doc: dict[str, Any]) -> tuple[ResourceState, str]:
    """Summarize the Ready and Stalled conditions of an object.

    Suspension takes precedence over the conditions. A Ready=False object
    waiting on a dependency is progressing rather than failed.
    """
    if _is_suspended(doc):
        return ResourceState.SUSPENDED, "Reconciliation suspended"

    conditions = {
        c.get("type"): c
        for c in (doc.get("status") or {}).get("conditions") or []
        if isinstance(c, dict)
    }
    if (stalled := conditions.get("Stalled")) and stalled.get("status") == "True":
        return ResourceState.FAILED, stalled.get("message") or "Stalled"
    if (ready := conditions.get("Ready")) is None:
        return ResourceState.UNKNOWN, "No status information available"

    message = ready.get("message") or "No status information available"
    status, reason = ready.get("status"), ready.get("reason")
    if status == "True":
        return ResourceState.READY, message
    if status == "False":
        if reason == Reason.DEPENDENCY_NOT_READY:
            return ResourceState.PROGRESSING, message
        return ResourceState.FAILED, message
    if status == "Unknown" and reason in (None, Reason.PROGRESSING, "Reconciling"):
        return ResourceState.PROGRESSING, message
    return ResourceState.UNKNOWN, message


def format_size(size: int) -> str:
    """Format a byte count e.g. `1.5 KiB`, empty for zero."""
    if size == 0:
        return ""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {SIZE_UNITS[exp]}iB"


def _reported_kind(ref: ResourceRef) -> bool:
    if ref.group.endswith(TOOLKIT_GROUP_SUFFIX):
        return True
    return ref.group == GROUP and ref.kind in OPERATOR_KINDS


def reconcilers_status(docs: list[dict[str, Any]]) -> list[ReconcilerStatus]:
    """Count the running, failing and suspended objects per kind."""
    stats: dict[tuple[str, str], ReconcilerStats] = {
        (API_VERSION, kind): ReconcilerStats() for kind in OPERATOR_KINDS
    }
    sizes: dict[tuple[str, str], int] = {}
    for doc in docs:
        try:
            ref = ResourceRef.from_doc(doc)
        except InputException:
            continue
        if not _reported_kind(ref):
            continue
        key = (ref.api_version, ref.kind)
        kind_stats = stats.setdefault(key, ReconcilerStats())
        state, _ = resource_state(doc)
        if state == ResourceState.SUSPENDED:
            kind_stats.suspended += 1
        else:
            kind_stats.running += 1
        if state == ResourceState.FAILED:
            kind_stats.failing += 1
        artifact = (doc.get("status") or {}).get("artifact") or {}
        if isinstance(size := artifact.get("size"), int):
            sizes[key] = sizes.get(key, 0) + size

    for key, size in sizes.items():
        stats[key].total_size = format_size(size) or None
    return [
        ReconcilerStatus(api_version=api_version, kind=kind, stats=kind_stats)
        for (api_version, kind), kind_stats in sorted(
            stats.items(), key=lambda item: item[0][0] + item[0][1]
        )
    ]


def distribution_status(doc: dict[str, Any] | None) -> DistributionStatus:
    """Describe the distribution installed by the given FluxInstance."""
    if doc is None:
        return DistributionStatus(status="Not Installed")
    instance = FluxInstance.from_document(doc)
    managed_by = f"{FLUX_INSTANCE_KIND}/{instance.namespaced_name}"
    if not (revision := instance.status.last_applied_revision):
        return DistributionStatus(status="Not Installed", managed_by=managed_by)
    return DistributionStatus(
        status="Installed",
        version=revision.split("@", 1)[0],
        managed_by=managed_by,
    )


async def compute_report(
    store: Store, namespace: str, instance: str = DEFAULT_INSTANCE_NAME
) -> Report:
    """Compute the report for the instance in the given namespace."""
    ref = ResourceRef(GROUP, FLUX_INSTANCE_KIND, namespace, instance, version="v1")
    try:
        instance_doc: dict[str, Any] | None = await store.get(ref)
    except ObjectNotFoundError:
        instance_doc = None
    return Report(
        distribution=distribution_status(instance_doc),
        reconcilers=reconcilers_status(await store.list()),
    )


async def request_report_update(
    store: Store, namespace: str, name: str = DEFAULT_INSTANCE_NAME
) -> None:
    """Annotate the report in the namespace to request a new computation."""
    ref = ResourceRef(GROUP, FLUX_REPORT_KIND, namespace, name, version="v1")
    token = datetime.now(timezone.utc).isoformat()
    try:
        await store.patch(
            ref, {"metadata": {"annotations": {RECONCILE_REQUEST_ANNOTATION: token}}}
        )
    except ObjectNotFoundError:
        _LOGGER.debug("No report %s to update", ref)
