"""Tests for the report computation."""

from typing import Any

import pytest

from flux_converge.manifest import DistributionStatus, ReconcilerStats
from flux_converge.reporter import (
    ResourceState,
    distribution_status,
    format_size,
    reconcilers_status,
    resource_state,
)

from conftest import config_map, flux_instance, resource_group


def _ready(status: str, reason: str = "", message: str = "") -> dict[str, Any]:
    return {"type": "Ready", "status": status, "reason": reason, "message": message}


def _with_conditions(doc: dict[str, Any], *conditions: dict[str, Any]) -> dict[str, Any]:
    doc["status"] = {"conditions": list(conditions)}
    return doc


@pytest.mark.parametrize(
    ("doc", "expected"),
    [
        (resource_group(), (ResourceState.UNKNOWN, "No status information available")),
        (
            _with_conditions(resource_group(), _ready("True", message="done")),
            (ResourceState.READY, "done"),
        ),
        (
            _with_conditions(resource_group(), _ready("False", message="boom")),
            (ResourceState.FAILED, "boom"),
        ),
        (
            _with_conditions(
                resource_group(),
                _ready("False", "DependencyNotReady", "waiting"),
            ),
            (ResourceState.PROGRESSING, "waiting"),
        ),
        (
            _with_conditions(
                resource_group(), _ready("Unknown", "Progressing", "in progress")
            ),
            (ResourceState.PROGRESSING, "in progress"),
        ),
        (
            _with_conditions(resource_group(), _ready("Unknown", "Other", "hmm")),
            (ResourceState.UNKNOWN, "hmm"),
        ),
        (
            _with_conditions(
                resource_group(),
                _ready("Unknown", "Progressing"),
                {"type": "Stalled", "status": "True", "message": "bad input"},
            ),
            (ResourceState.FAILED, "bad input"),
        ),
        (
            _with_conditions(
                resource_group(
                    annotations={"fluxcd.controlplane.io/reconcile": "Disabled"}
                ),
                _ready("False", message="boom"),
            ),
            (ResourceState.SUSPENDED, "Reconciliation suspended"),
        ),
        (
            {
                "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
                "kind": "Kustomization",
                "metadata": {"name": "apps", "namespace": "flux-system"},
                "spec": {"suspend": True},
            },
            (ResourceState.SUSPENDED, "Reconciliation suspended"),
        ),
    ],
    ids=[
        "no-status",
        "ready",
        "failed",
        "dependency",
        "progressing",
        "unknown-reason",
        "stalled",
        "disabled",
        "suspended",
    ],
)
def test_resource_state(
    doc: dict[str, Any], expected: tuple[ResourceState, str]
) -> None:
    assert resource_state(doc) == expected


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, ""),
        (512, "512 B"),
        (1536, "1.5 KiB"),
        (5 * 1024 * 1024, "5.0 MiB"),
    ],
)
def test_format_size(size: int, expected: str) -> None:
    assert format_size(size) == expected


def test_reconcilers_status() -> None:
    """Test objects are counted per kind and unrelated kinds are ignored."""
    repository = {
        "apiVersion": "source.toolkit.fluxcd.io/v1",
        "kind": "GitRepository",
        "metadata": {"name": "repo", "namespace": "flux-system"},
        "status": {
            "artifact": {"size": 2048},
            "conditions": [_ready("True")],
        },
    }
    docs = [
        _with_conditions(resource_group("a"), _ready("True")),
        _with_conditions(resource_group("b"), _ready("False")),
        resource_group("c", annotations={"fluxcd.controlplane.io/reconcile": "disabled"}),
        repository,
        config_map("ignored"),
        {"kind": "Broken"},
    ]
    stats = {(s.api_version, s.kind): s.stats for s in reconcilers_status(docs)}
    assert list(stats) == [
        ("fluxcd.controlplane.io/v1", "FluxInstance"),
        ("fluxcd.controlplane.io/v1", "ResourceGroup"),
        ("source.toolkit.fluxcd.io/v1", "GitRepository"),
    ]
    assert stats[("fluxcd.controlplane.io/v1", "FluxInstance")] == ReconcilerStats()
    assert stats[("fluxcd.controlplane.io/v1", "ResourceGroup")] == ReconcilerStats(
        running=2, failing=1, suspended=1
    )
    assert stats[("source.toolkit.fluxcd.io/v1", "GitRepository")] == ReconcilerStats(
        running=1, total_size="2.0 KiB"
    )


def test_distribution_status() -> None:
    assert distribution_status(None) == DistributionStatus(status="Not Installed")

    doc = flux_instance()
    assert distribution_status(doc) == DistributionStatus(
        status="Not Installed", managed_by="FluxInstance/flux-system/flux"
    )

    doc["status"] = {"lastAppliedRevision": "v2.4.0@sha256:abc"}
    assert distribution_status(doc) == DistributionStatus(
        status="Installed",
        version="v2.4.0",
        managed_by="FluxInstance/flux-system/flux",
    )
