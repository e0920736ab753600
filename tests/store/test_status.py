"""Tests for computing the readiness of resources."""

from typing import Any

import pytest

from flux_converge.store import Status, compute_status
from flux_converge.store.status import aggregate_not_ready_status


def _doc(kind: str = "Widget", generation: int = 1, **status: Any) -> dict[str, Any]:
    return {
        "apiVersion": "example.com/v1",
        "kind": kind,
        "metadata": {"name": "w", "namespace": "default", "generation": generation},
        "status": status,
    }


def _ready(status: str, message: str = "") -> list[dict[str, str]]:
    return [{"type": "Ready", "status": status, "message": message}]


@pytest.mark.parametrize(
    ("doc", "expected"),
    [
        (None, Status.NOT_FOUND),
        (_doc(), Status.CURRENT),
        (_doc(conditions=_ready("True")), Status.CURRENT),
        (_doc(conditions=_ready("Unknown")), Status.IN_PROGRESS),
        (_doc(conditions=_ready("False", "boom")), Status.IN_PROGRESS),
        (
            _doc(
                conditions=[
                    *_ready("False", "boom"),
                    {"type": "Stalled", "status": "True", "message": "boom"},
                ]
            ),
            Status.FAILED,
        ),
        (
            _doc(generation=2, observedGeneration=1, conditions=_ready("True")),
            Status.IN_PROGRESS,
        ),
        (
            _doc(conditions=[{"type": "Stalled", "status": "True", "message": "x"}]),
            Status.FAILED,
        ),
        (
            _doc(conditions=[{"type": "Reconciling", "status": "True"}]),
            Status.IN_PROGRESS,
        ),
        (
            _doc(
                kind="CustomResourceDefinition",
                conditions=[{"type": "Established", "status": "False"}],
            ),
            Status.IN_PROGRESS,
        ),
        (
            _doc(kind="Deployment", readyReplicas=0, updatedReplicas=1),
            Status.IN_PROGRESS,
        ),
        (
            _doc(
                kind="Deployment",
                readyReplicas=1,
                updatedReplicas=1,
                availableReplicas=1,
            ),
            Status.CURRENT,
        ),
    ],
)
def test_compute_status(doc: dict[str, Any] | None, expected: Status) -> None:
    assert compute_status(doc).status == expected


def test_terminating() -> None:
    doc = _doc()
    doc["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    result = compute_status(doc)
    assert result.status == Status.TERMINATING
    assert str(result) == "Terminating: resource scheduled for deletion"


def test_aggregate_not_ready_status() -> None:
    """Test only Flux resources that are not ready are summarized."""
    kustomization = {
        "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
        "kind": "Kustomization",
        "metadata": {"name": "apps", "namespace": "flux-system"},
        "status": {"conditions": _ready("False", "kustomize build failed")},
    }
    ready_source = {
        "apiVersion": "source.toolkit.fluxcd.io/v1",
        "kind": "GitRepository",
        "metadata": {"name": "repo", "namespace": "flux-system"},
        "status": {"conditions": _ready("True", "stored artifact")},
    }
    other = _doc(conditions=_ready("False", "ignored"))
    assert aggregate_not_ready_status([kustomization, ready_source, other]) == (
        "Kustomization/flux-system/apps status: kustomize build failed"
    )
