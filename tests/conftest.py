"""Shared fixtures for flux-converge tests."""

from datetime import timedelta
from typing import Any

import pytest

from flux_converge.artifact import ArtifactResolver, Auth
from flux_converge.config import ApplyConfig, ControllerConfig
from flux_converge.events import MemoryEventRecorder
from flux_converge.manifest import API_VERSION
from flux_converge.store import InMemoryStore


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Create an in-memory store for testing."""
    return InMemoryStore()


@pytest.fixture(name="events")
def events_fixture() -> MemoryEventRecorder:
    """Create an event recorder for testing."""
    return MemoryEventRecorder()


@pytest.fixture(name="config")
def config_fixture() -> ControllerConfig:
    """Controller configuration with short waits."""
    return ControllerConfig(
        apply=ApplyConfig(wait_interval=timedelta(milliseconds=10)),
    )


def config_map(
    name: str, namespace: str = "default", data: dict[str, str] | None = None
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": data if data is not None else {"key": name},
    }


def resource_group(
    name: str = "apps",
    namespace: str = "default",
    resources: list[dict[str, Any]] | None = None,
    annotations: dict[str, str] | None = None,
    **spec: Any,
) -> dict[str, Any]:
    return {
        "apiVersion": API_VERSION,
        "kind": "ResourceGroup",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "annotations": annotations or {},
        },
        "spec": {"resources": resources or [], **spec},
    }


class FakeResolver(ArtifactResolver):
    """Resolver returning a fixed digest."""

    def __init__(self, digest: str = "", error: Exception | None = None) -> None:
        self.digest = digest
        self.error = error
        self.calls: list[tuple[str, Auth | None]] = []

    async def resolve_digest(self, url: str, auth: Auth | None = None) -> str:
        self.calls.append((url, auth))
        if self.error is not None:
            raise self.error
        return self.digest


def flux_instance(
    version: str = "2.x",
    name: str = "flux",
    namespace: str = "flux-system",
    annotations: dict[str, str] | None = None,
    **distribution: Any,
) -> dict[str, Any]:
    return {
        "apiVersion": API_VERSION,
        "kind": "FluxInstance",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "annotations": annotations or {},
        },
        "spec": {"distribution": {"version": version, **distribution}},
    }
