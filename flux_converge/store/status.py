"""Readiness of arbitrary resources computed from their status.

This follows the kstatus conventions: an object is `Current` once its
controller has observed the latest generation and reports it ready. Kinds
without a status are `Current` as soon as they exist.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from flux_converge.manifest import ResourceRef

__all__ = [
    "Status",
    "ResourceStatus",
    "compute_status",
    "aggregate_not_ready_status",
]


class Status(StrEnum):
    """Computed readiness of a resource."""

    CURRENT = "Current"
    IN_PROGRESS = "InProgress"
    FAILED = "Failed"
    TERMINATING = "Terminating"
    NOT_FOUND = "NotFound"


@dataclass
class ResourceStatus:
    """Readiness and an optional explanation."""

    status: Status
    message: str = ""

    def __str__(self) -> str:
        if self.message:
            return f"{self.status}: {self.message}"
        return str(self.status)


def _conditions(doc: dict[str, Any]) -> dict[str, dict[str, Any]]:
    status = doc.get("status") or {}
    return {
        c["type"]: c
        for c in status.get("conditions") or []
        if isinstance(c, dict) and "type" in c
    }


def _replicas_status(doc: dict[str, Any]) -> ResourceStatus | None:
    spec = doc.get("spec") or {}
    status = doc.get("status") or {}
    desired = spec.get("replicas", 1)
    kind = doc.get("kind")
    if kind == "Deployment":
        for key in ("updatedReplicas", "readyReplicas", "availableReplicas"):
            if status.get(key, 0) < desired:
                return ResourceStatus(
                    Status.IN_PROGRESS,
                    f"{key}: {status.get(key, 0)}/{desired}",
                )
    elif kind == "StatefulSet":
        if status.get("readyReplicas", 0) < desired:
            return ResourceStatus(
                Status.IN_PROGRESS,
                f"readyReplicas: {status.get('readyReplicas', 0)}/{desired}",
            )
    return None


def compute_status(doc: dict[str, Any] | None) -> ResourceStatus:
    """Compute the readiness of a single resource document."""
    if doc is None:
        return ResourceStatus(Status.NOT_FOUND, "resource not found")
    metadata = doc.get("metadata") or {}
    if metadata.get("deletionTimestamp"):
        return ResourceStatus(Status.TERMINATING, "resource scheduled for deletion")

    status = doc.get("status") or {}
    if not status:
        return ResourceStatus(Status.CURRENT)

    if (observed := status.get("observedGeneration")) is not None:
        if observed < metadata.get("generation", 0):
            return ResourceStatus(Status.IN_PROGRESS, "latest generation not observed")

    conditions = _conditions(doc)
    if (stalled := conditions.get("Stalled")) and stalled.get("status") == "True":
        return ResourceStatus(Status.FAILED, stalled.get("message", ""))
    if (reconciling := conditions.get("Reconciling")) and reconciling.get(
        "status"
    ) == "True":
        return ResourceStatus(Status.IN_PROGRESS, reconciling.get("message", ""))
    if doc.get("kind") == "CustomResourceDefinition":
        established = conditions.get("Established")
        if established and established.get("status") != "True":
            return ResourceStatus(Status.IN_PROGRESS, "CRD not established")
    # Only Stalled is terminal, a Ready=False object may still recover.
    if (ready := conditions.get("Ready")) is not None:
        if ready.get("status") != "True":
            return ResourceStatus(Status.IN_PROGRESS, ready.get("message", ""))

    if (result := _replicas_status(doc)) is not None:
        return result
    return ResourceStatus(Status.CURRENT)


def aggregate_not_ready_status(docs: list[dict[str, Any]]) -> str:
    """Summarize the Ready message of Flux resources that are not ready.

    Only resources in a `*.fluxcd.io` group are considered since they follow
    the Ready condition convention.
    """
    lines = []
    for doc in docs:
        ref = ResourceRef.from_doc(doc)
        if not ref.group.endswith(".fluxcd.io"):
            continue
        if (ready := _conditions(doc).get("Ready")) is None:
            continue
        if ready.get("status") != "True":
            lines.append(f"{ref} status: {ready.get('message', '')}")
    return "\n".join(lines)
