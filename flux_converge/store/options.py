"""Options for writing to the cluster store."""

from dataclasses import dataclass, field
from enum import StrEnum

__all__ = [
    "ApplyOptions",
    "ApplyCleanupOptions",
    "DeleteOptions",
    "FieldManager",
    "ManagedFieldsOperation",
    "PropagationPolicy",
]


class ManagedFieldsOperation(StrEnum):
    """Type of write that took ownership of a set of fields."""

    APPLY = "Apply"
    UPDATE = "Update"


class PropagationPolicy(StrEnum):
    """How dependents are garbage collected on delete."""

    BACKGROUND = "Background"
    FOREGROUND = "Foreground"
    ORPHAN = "Orphan"


@dataclass(frozen=True)
class FieldManager:
    """A foreign field manager whose fields are taken over on apply."""

    name: str
    operation: ManagedFieldsOperation = ManagedFieldsOperation.APPLY
    exact_match: bool = False
    """Match the manager name exactly instead of by prefix."""

    def matches(self, name: str, operation: ManagedFieldsOperation) -> bool:
        if operation != self.operation:
            return False
        if self.exact_match:
            return name == self.name
        return name.startswith(self.name)


@dataclass
class ApplyCleanupOptions:
    """Legacy metadata and ownership removed from applied objects."""

    annotations: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    field_managers: list[FieldManager] = field(default_factory=list)


@dataclass
class ApplyOptions:
    """Options for a server-side apply."""

    field_manager: str
    """Name of the manager that owns the applied fields."""

    force: bool = False
    """Take ownership of conflicting fields from any manager."""

    cleanup: ApplyCleanupOptions = field(default_factory=ApplyCleanupOptions)


@dataclass
class DeleteOptions:
    """Options for deleting an object.

    Inclusions must all be present as labels on the object. An object with any
    exclusion present as a label or annotation is skipped.
    """

    propagation_policy: PropagationPolicy = PropagationPolicy.BACKGROUND
    inclusions: dict[str, str] = field(default_factory=dict)
    exclusions: dict[str, str] = field(default_factory=dict)
