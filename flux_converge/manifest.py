"""Representation of managed objects and the cluster resources they own.

Managed objects are the user facing spec/status resources (e.g. a
ResourceGroup or a FluxInstance). They are stored as Kubernetes shaped
documents and parsed into dataclasses here. The convergence core only relies
on the capability methods of `ManagedObject` and never on a concrete kind.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
import logging
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .annotations import (
    GROUP,
    DEFAULT_INTERVAL,
    DEFAULT_TIMEOUT,
    RECONCILE_REQUEST_ANNOTATION,
    ReconcileSettings,
)
from .exceptions import InputException

__all__ = [
    "ResourceRef",
    "Dependency",
    "Condition",
    "ResourceInventory",
    "ManagedObject",
    "ResourceGroup",
    "FluxInstance",
    "FluxReport",
    "parse_managed_object",
]

_LOGGER = logging.getLogger(__name__)


API_VERSION = f"{GROUP}/v1"
FINALIZER = f"{GROUP}/finalizer"
RESOURCE_GROUP_KIND = "ResourceGroup"
FLUX_INSTANCE_KIND = "FluxInstance"
FLUX_REPORT_KIND = "FluxReport"
DEFAULT_INSTANCE_NAME = "flux"
NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"

# Kinds that are never namespaced. Anything else gets the default namespace
# injected during normalization.
CLUSTER_SCOPED_KINDS = frozenset(
    {
        NAMESPACE_KIND,
        CRD_KIND,
        "ClusterRole",
        "ClusterRoleBinding",
        "PriorityClass",
        "StorageClass",
        "PersistentVolume",
        "IngressClass",
        "RuntimeClass",
        "ValidatingWebhookConfiguration",
        "MutatingWebhookConfiguration",
        "ValidatingAdmissionPolicy",
        "ValidatingAdmissionPolicyBinding",
        "APIService",
        "Node",
    }
)


def now_rfc3339() -> str:
    """Return the current time formatted like a Kubernetes timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split an apiVersion into its group and version."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Identity of a cluster resource.

    The version is informational and is not part of equality or hashing.
    """

    group: str
    kind: str
    namespace: str
    name: str
    version: str = field(default="", compare=False, hash=False)

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "ResourceRef":
        """Return the identity of a resource document."""
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        metadata = doc.get("metadata") or {}
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        group, version = split_api_version(api_version)
        return cls(
            group=group,
            kind=kind,
            namespace=metadata.get("namespace") or "",
            name=name,
            version=version,
        )

    @classmethod
    def parse_id(cls, ref_id: str, version: str = "") -> "ResourceRef":
        """Parse an inventory id in the format `<namespace>_<name>_<group>_<kind>`."""
        parts = ref_id.split("_")
        if len(parts) != 4:
            raise InputException(f"Invalid inventory entry id {ref_id!r}")
        namespace, name, group, kind = parts
        return cls(
            group=group, kind=kind, namespace=namespace, name=name, version=version
        )

    @property
    def id(self) -> str:
        """Inventory id of the resource."""
        return f"{self.namespace}_{self.name}_{self.group}_{self.kind}"

    @property
    def api_version(self) -> str:
        """The apiVersion of the resource, if the version is known."""
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class Condition(BaseManifest):
    """Status condition of a managed object."""

    type: str
    """Type of the condition e.g. Ready."""

    status: str
    """One of True, False or Unknown."""

    reason: str
    """Machine readable reason for the last transition."""

    message: str = ""
    """Human readable message for the last transition."""

    last_transition_time: str = field(
        metadata=field_options(alias="lastTransitionTime"), default_factory=now_rfc3339
    )
    """Time of the last status change."""

    observed_generation: int = field(
        metadata=field_options(alias="observedGeneration"), default=0
    )
    """The object generation the condition was computed for."""


@dataclass
class InventoryEntry(BaseManifest):
    """Serialized form of a ResourceRef in the inventory."""

    id: str
    """Identity in the format `<namespace>_<name>_<group>_<kind>`."""

    version: str = field(metadata=field_options(alias="v"), default="")
    """API version of the resource kind."""


@dataclass
class ResourceInventory(BaseManifest):
    """List of resources last applied by a managed object."""

    entries: list[InventoryEntry] = field(default_factory=list)


@dataclass
class Dependency(BaseManifest):
    """A resource that must exist (and optionally be ready) before applying."""

    api_version: str = field(metadata=field_options(alias="apiVersion"))
    """APIVersion of the resource to depend on."""

    kind: str
    """Kind of the resource to depend on."""

    name: str
    """Name of the resource to depend on."""

    namespace: str = ""
    """Namespace of the resource to depend on."""

    ready: bool = False
    """Require the resource Ready condition to be True."""

    @property
    def ref(self) -> ResourceRef:
        group, version = split_api_version(self.api_version)
        return ResourceRef(
            group=group,
            kind=self.kind,
            namespace=self.namespace,
            name=self.name,
            version=version,
        )

    @property
    def id_name(self) -> str:
        return f"{self.api_version}/{self.kind}/{self.name}"


@dataclass
class CommonMetadata(BaseManifest):
    """Labels and annotations added to every applied resource."""

    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ObjectMeta(BaseManifest):
    """Metadata of a managed object."""

    name: str
    namespace: str
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    generation: int = 1
    resource_version: str = field(
        metadata=field_options(alias="resourceVersion"), default=""
    )
    deletion_timestamp: str | None = field(
        metadata=field_options(alias="deletionTimestamp"), default=None
    )


@dataclass
class ManagedStatus(BaseManifest):
    """Status fields shared by all managed objects."""

    conditions: list[Condition] = field(default_factory=list)
    """Readiness conditions of the object."""

    inventory: ResourceInventory | None = None
    """Resources last applied on the cluster."""

    last_handled_reconcile_at: str | None = field(
        metadata=field_options(alias="lastHandledReconcileAt"), default=None
    )
    """Token of the last handled reconciliation request."""


@dataclass
class ManagedObject(BaseManifest):
    """Capabilities shared by every managed object kind."""

    kind: ClassVar[str]
    owner_group: ClassVar[str] = GROUP

    metadata: ObjectMeta

    # Subclasses define typed spec and status fields.
    status: ManagedStatus

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "ManagedObject":
        """Parse a managed object from a stored document."""
        if doc.get("kind") != cls.kind:
            raise InputException(f"Invalid {cls.kind} document kind: {doc.get('kind')}")
        if not (api_version := doc.get("apiVersion", "")).startswith(GROUP):
            raise InputException(f"Invalid {cls.kind} apiVersion: {api_version}")
        if not (metadata := doc.get("metadata")) or not metadata.get("name"):
            raise InputException(f"Invalid {cls.kind} missing metadata.name: {doc}")
        return cls.from_dict(doc)

    def to_document(self) -> dict[str, Any]:
        """Serialize to a Kubernetes shaped document."""
        return {"apiVersion": API_VERSION, "kind": self.kind, **self.to_dict()}

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def namespaced_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def ref(self) -> ResourceRef:
        """Identity of the managed object in the store."""
        return ResourceRef(
            group=GROUP,
            kind=self.kind,
            namespace=self.namespace,
            name=self.name,
            version="v1",
        )

    @property
    def settings(self) -> ReconcileSettings:
        """Annotation settings, these are validated at admission."""
        return ReconcileSettings.parse(self.metadata.annotations)

    def get_conditions(self) -> list[Condition]:
        return self.status.conditions

    def set_conditions(self, conditions: list[Condition]) -> None:
        self.status.conditions = conditions

    def is_disabled(self) -> bool:
        return self.settings.disabled

    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def get_interval(self) -> timedelta:
        """Interval at which the object is reconciled, zero when disabled."""
        settings = self.settings
        if settings.disabled:
            return timedelta(0)
        return settings.interval if settings.interval is not None else DEFAULT_INTERVAL

    def get_timeout(self) -> timedelta:
        """Timeout for the health checks of the applied resources."""
        return self.settings.timeout or DEFAULT_TIMEOUT

    def get_wait(self) -> bool:
        """Wait for applied resources to become ready."""
        return True

    def get_dependencies(self) -> list["Dependency"]:
        return []

    def get_common_metadata(self) -> CommonMetadata | None:
        return None

    def has_finalizer(self, finalizer: str = FINALIZER) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str = FINALIZER) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str = FINALIZER) -> None:
        self.metadata.finalizers = [
            f for f in self.metadata.finalizers if f != finalizer
        ]

    def get_reconcile_request(self) -> str | None:
        """Token of the requested reconciliation, read without validation."""
        return self.metadata.annotations.get(RECONCILE_REQUEST_ANNOTATION) or None

    def set_last_handled_reconcile_at(self, value: str) -> None:
        self.status.last_handled_reconcile_at = value

    def get_inventory(self) -> ResourceInventory | None:
        return self.status.inventory

    def set_inventory(self, inventory: ResourceInventory) -> None:
        self.status.inventory = inventory


@dataclass
class ResourceGroupSpec(BaseManifest):
    """Desired state of a ResourceGroup."""

    common_metadata: CommonMetadata | None = field(
        metadata=field_options(alias="commonMetadata"), default=None
    )
    """Labels and annotations applied to all resources."""

    inputs: list[dict[str, str]] = field(default_factory=list)
    """Key/value inputs available to the resource templates."""

    resources: list[dict[str, Any]] = field(default_factory=list)
    """Resource templates to reconcile."""

    depends_on: list[Dependency] = field(
        metadata=field_options(alias="dependsOn"), default_factory=list
    )
    """Resources that must exist before reconciling."""

    wait: bool = True
    """Wait for the applied resources to become ready."""


@dataclass
class ResourceGroupStatus(ManagedStatus):
    """Observed state of a ResourceGroup."""


@dataclass
class ResourceGroup(ManagedObject):
    """A generic group of resources applied as a unit."""

    kind: ClassVar[str] = RESOURCE_GROUP_KIND
    owner_group: ClassVar[str] = f"resourcegroup.{GROUP}"

    spec: ResourceGroupSpec = field(default_factory=ResourceGroupSpec)
    status: ResourceGroupStatus = field(default_factory=ResourceGroupStatus)

    def get_wait(self) -> bool:
        return self.spec.wait

    def get_dependencies(self) -> list[Dependency]:
        return self.spec.depends_on

    def get_common_metadata(self) -> CommonMetadata | None:
        return self.spec.common_metadata


@dataclass
class Distribution(BaseManifest):
    """Where the distribution manifests and images come from."""

    version: str
    """Version semver expression e.g. `2.x`."""

    registry: str = "ghcr.io/fluxcd"
    """Container registry of the component images."""

    artifact: str | None = None
    """OCI artifact URL of the distribution manifests."""

    artifact_pull_secret: str | None = field(
        metadata=field_options(alias="artifactPullSecret"), default=None
    )
    """Secret with the credentials for pulling the artifact."""

    image_pull_secret: str | None = field(
        metadata=field_options(alias="imagePullSecret"), default=None
    )
    """Secret used by the components to pull images."""


@dataclass
class KustomizeSpec(BaseManifest):
    """Patches applied to the rendered distribution."""

    patches: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class FluxInstanceSpec(BaseManifest):
    """Desired state of a FluxInstance."""

    distribution: Distribution
    components: list[str] = field(default_factory=list)
    common_metadata: CommonMetadata | None = field(
        metadata=field_options(alias="commonMetadata"), default=None
    )
    kustomize: KustomizeSpec | None = None
    wait: bool = True


@dataclass
class FluxInstanceStatus(ManagedStatus):
    """Observed state of a FluxInstance."""

    last_applied_revision: str | None = field(
        metadata=field_options(alias="lastAppliedRevision"), default=None
    )
    last_attempted_revision: str | None = field(
        metadata=field_options(alias="lastAttemptedRevision"), default=None
    )
    last_artifact_revision: str | None = field(
        metadata=field_options(alias="lastArtifactRevision"), default=None
    )


DEFAULT_COMPONENTS = [
    "source-controller",
    "kustomize-controller",
    "helm-controller",
    "notification-controller",
]


@dataclass
class FluxInstance(ManagedObject):
    """Installer of the software distribution."""

    kind: ClassVar[str] = FLUX_INSTANCE_KIND

    spec: FluxInstanceSpec = field(
        default_factory=lambda: FluxInstanceSpec(Distribution(version="2.x"))
    )
    status: FluxInstanceStatus = field(default_factory=FluxInstanceStatus)

    def get_components(self) -> list[str]:
        """Return the components to install with defaults."""
        return list(self.spec.components or DEFAULT_COMPONENTS)

    def get_wait(self) -> bool:
        return self.spec.wait

    def get_common_metadata(self) -> CommonMetadata | None:
        return self.spec.common_metadata


@dataclass
class DistributionStatus(BaseManifest):
    """Version information of the installed distribution."""

    status: str
    """Installed, or Not Installed when no instance applied a revision."""

    version: str | None = None
    """Version of the last applied revision."""

    managed_by: str | None = field(
        metadata=field_options(alias="managedBy"), default=None
    )
    """The FluxInstance that installed the distribution."""


@dataclass
class ReconcilerStats(BaseManifest):
    """Counters of the objects of one kind."""

    running: int = 0
    failing: int = 0
    suspended: int = 0
    total_size: str | None = field(
        metadata=field_options(alias="totalSize"), default=None
    )
    """Total size of the stored artifacts, for source kinds."""


@dataclass
class ReconcilerStatus(BaseManifest):
    """Statistics of the objects of one reconciled kind."""

    api_version: str = field(metadata=field_options(alias="apiVersion"))
    kind: str
    stats: ReconcilerStats = field(default_factory=ReconcilerStats)


@dataclass
class FluxReportStatus(ManagedStatus):
    """Computed report of the installation."""

    distribution: DistributionStatus | None = None
    reconcilers: list[ReconcilerStatus] = field(default_factory=list)


@dataclass
class FluxReport(ManagedObject):
    """Read only summary of the distribution and the reconciled objects.

    The report is written to the status only and never changes the generation
    of the object.
    """

    kind: ClassVar[str] = FLUX_REPORT_KIND

    status: FluxReportStatus = field(default_factory=FluxReportStatus)


MANAGED_KINDS: dict[str, type[ManagedObject]] = {
    RESOURCE_GROUP_KIND: ResourceGroup,
    FLUX_INSTANCE_KIND: FluxInstance,
}


def parse_managed_object(doc: dict[str, Any]) -> ManagedObject:
    """Parse a stored document into the managed object of its kind."""
    if not (kind := doc.get("kind")):
        raise InputException(f"Invalid object missing kind: {doc}")
    if (cls := MANAGED_KINDS.get(kind)) is None:
        raise InputException(f"Unsupported managed object kind {kind}")
    return cls.from_document(doc)
