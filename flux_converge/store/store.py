"""Cluster store interface used by the convergence engine."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from flux_converge.changeset import Action
from flux_converge.manifest import ResourceRef

from .options import ApplyOptions, DeleteOptions

__all__ = [
    "Store",
    "StoreEvent",
    "Validator",
]

Validator = Callable[[dict[str, Any]], None]
"""Admission check raising an exception to reject a document."""


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_UPDATED = "object_updated"
    OBJECT_DELETED = "object_deleted"


class Store(ABC):
    """Abstract base class for the live cluster state.

    Documents are Kubernetes shaped dictionaries. The store owns field
    ownership arbitration and label based selection. All reads return copies
    so callers can never mutate stored state in place.
    """

    @abstractmethod
    async def get(self, ref: ResourceRef) -> dict[str, Any]:
        """Return the object, raising ObjectNotFoundError when missing."""

    @abstractmethod
    async def apply(self, doc: dict[str, Any], options: ApplyOptions) -> Action:
        """Server-side apply a document.

        Returns Created, Configured or Unchanged. Raises ConflictError when a
        field owned by another manager would change and is not taken over.
        """

    @abstractmethod
    async def delete(self, ref: ResourceRef, options: DeleteOptions) -> Action:
        """Delete an object.

        Returns Deleted, or Skipped when the object does not match the
        inclusions or matches an exclusion. Raises ObjectNotFoundError.
        """

    @abstractmethod
    async def patch(
        self,
        ref: ResourceRef,
        merge_patch: dict[str, Any],
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        """Apply a JSON merge patch and return the updated object.

        When a resource version is given it must match the stored one or
        ConflictError is raised.
        """

    @abstractmethod
    async def list(
        self,
        kind: str | None = None,
        api_group: str | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List objects matching all of the given selectors."""

    @abstractmethod
    def add_validator(self, kind: str, validator: Validator) -> None:
        """Register an admission check for writes of the given kind."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[ResourceRef, dict[str, Any]], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a store event.

        When flush is set the callback is invoked for every existing object.
        Returns a callable that removes the listener.
        """
