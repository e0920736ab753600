"""Configuration objects for flux-converge."""

from dataclasses import dataclass, field
from datetime import timedelta

from .annotations import DEFAULT_ARTIFACT_INTERVAL, DEFAULT_INTERVAL, DEFAULT_TIMEOUT

DEFAULT_FIELD_MANAGER = "flux-operator"
DEFAULT_TAKEOVER_MANAGERS = ["flux"]


@dataclass
class ApplyConfig:
    """Configuration for the server-side apply of resources."""

    field_manager: str = DEFAULT_FIELD_MANAGER
    """Field manager name used for every apply."""

    takeover_managers: list[str] = field(
        default_factory=lambda: list(DEFAULT_TAKEOVER_MANAGERS)
    )
    """Foreign field managers taken over in addition to kustomize-controller,
    helm, kubectl and before-first-apply.
    """

    wait_interval: timedelta = timedelta(seconds=5)
    """Poll interval while waiting for resources to become ready."""


@dataclass
class ControllerConfig:
    """Configuration shared by the managed object controllers."""

    status_manager: str = "flux-operator"
    """Field manager used for status patches."""

    dependency_requeue: timedelta = timedelta(seconds=5)
    """Requeue delay when a dependency is not ready."""

    default_interval: timedelta = DEFAULT_INTERVAL
    default_timeout: timedelta = DEFAULT_TIMEOUT
    default_artifact_interval: timedelta = DEFAULT_ARTIFACT_INTERVAL

    report_interval: timedelta = timedelta(minutes=5)
    """Default interval between two computations of a FluxReport."""

    apply: ApplyConfig = field(default_factory=ApplyConfig)


@dataclass
class ManagerConfig:
    """Configuration for the controller manager worker pool."""

    max_concurrent_reconciles: int = 4
    backoff_base: timedelta = timedelta(seconds=1)
    backoff_cap: timedelta = timedelta(minutes=5)
