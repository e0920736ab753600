"""Shared control loop pieces for managed object controllers.

Every reconciliation runs inside `reconcile_attempt`. Whatever way the body
exits the object status is finalized and patched back to the store, so the
persisted conditions always describe the last attempt.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
import logging
from time import monotonic
from typing import Any, ClassVar, Generic, TypeVar

from flux_converge import conditions
from flux_converge.annotations import format_duration
from flux_converge.apply import ApplyEngine
from flux_converge.changeset import ChangeSet
from flux_converge.conditions import Reason
from flux_converge.config import ControllerConfig
from flux_converge.context import trace_context
from flux_converge.events import EventRecorder, EventType
from flux_converge.exceptions import (
    ConvergeException,
    InputException,
    InvalidAnnotationError,
    ObjectNotFoundError,
    StatusPatchError,
)
from flux_converge.manifest import ManagedObject, ResourceRef
from flux_converge.scheduler import ReconcileResult, RequeueScheduler
from flux_converge.store import Store

__all__ = [
    "ManagedObjectReconciler",
    "ReconcileAttempt",
    "Reconciler",
    "reconcile_attempt",
]

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=ManagedObject)


def elapsed_message(prefix: str, start: float) -> str:
    """Return e.g. `Reconciliation finished in 1m5s`."""
    return f"{prefix} in {format_duration(timedelta(seconds=monotonic() - start))}"


class ReconcileAttempt:
    """Tracks the persisted state of an object during one attempt."""

    def __init__(self, store: Store, obj: ManagedObject) -> None:
        self._store = store
        self._obj = obj
        self._resource_version = obj.metadata.resource_version or None
        self._snapshot = self._patch_body()

    def _patch_body(self) -> dict[str, Any]:
        return {
            "metadata": {"finalizers": list(self._obj.metadata.finalizers)},
            "status": self._obj.status.to_dict(),
        }

    async def patch(self) -> None:
        """Persist the finalizers and status when they changed.

        The stored resource version must still match the one read at the
        start of the attempt, a concurrent write raises ConflictError.
        """
        body = self._patch_body()
        if body == self._snapshot:
            return
        # Status fields dropped since the snapshot are removed explicitly.
        for key in self._snapshot["status"]:
            body["status"].setdefault(key, None)
        updated = await self._store.patch(
            self._obj.ref, body, resource_version=self._resource_version
        )
        self._resource_version = updated["metadata"].get("resourceVersion")
        self._obj.metadata.resource_version = self._resource_version or ""
        self._snapshot = self._patch_body()


@asynccontextmanager
async def reconcile_attempt(
    store: Store, obj: ManagedObject
) -> AsyncGenerator[ReconcileAttempt, None]:
    """Run a reconciliation attempt that always finalizes and patches status.

    A failure to patch the status is raised as StatusPatchError, chained to
    and mentioning the error of the attempt itself when there was one.
    """
    attempt = ReconcileAttempt(store, obj)
    error: BaseException | None = None
    try:
        yield attempt
    except BaseException as err:
        error = err
        raise
    finally:
        conditions.finalize_object_status(obj)
        try:
            await attempt.patch()
        except ObjectNotFoundError:
            if not obj.is_deleting():
                _LOGGER.error("Failed to update status of %s: not found", obj.ref)
                raise StatusPatchError(f"failed to update status: {obj.ref} not found")
        except ConvergeException as patch_err:
            _LOGGER.error("Failed to update status of %s: %s", obj.ref, patch_err)
            message = f"failed to update status: {patch_err}"
            if error is not None and not isinstance(error, StatusPatchError):
                message = f"{error}; {message}"
            raise StatusPatchError(message) from (error or patch_err)


class Reconciler(ABC):
    """A controller reconciling one kind of object by key."""

    @property
    @abstractmethod
    def kind(self) -> str:
        """Kind of the objects reconciled."""

    @abstractmethod
    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        """Reconcile the object, raising an exception for transient failures."""


class ManagedObjectReconciler(Reconciler, Generic[T]):
    """Control loop shared by managed object kinds.

    Subclasses implement `_reconcile` for an object that is initialized,
    enabled and not being deleted.
    """

    object_class: ClassVar[type[ManagedObject]]

    def __init__(
        self,
        store: Store,
        events: EventRecorder,
        config: ControllerConfig | None = None,
    ) -> None:
        self._store = store
        self._events = events
        self._config = config or ControllerConfig()
        self._engine = ApplyEngine(store, self._config.apply)
        self._scheduler = RequeueScheduler(self._config)

    @property
    def kind(self) -> str:
        return self.object_class.kind

    async def get_object(self, ref: ResourceRef) -> T | None:
        try:
            doc = await self._store.get(ref)
        except ObjectNotFoundError:
            return None
        return self.object_class.from_document(doc)  # type: ignore[return-value]

    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        try:
            obj = await self.get_object(ref)
        except InputException as err:
            _LOGGER.error("Unable to parse %s: %s", ref, err)
            return ReconcileResult()
        if obj is None:
            _LOGGER.debug("%s not found, nothing to reconcile", ref)
            return ReconcileResult()

        with trace_context(str(obj.ref)):
            async with reconcile_attempt(self._store, obj) as attempt:
                if obj.is_deleting():
                    return await self._uninstall(obj)

                try:
                    settings = obj.settings
                except InvalidAnnotationError as err:
                    self._mark_build_failed(obj, f"invalid annotations: {err}")
                    return ReconcileResult()

                if not obj.has_finalizer():
                    _LOGGER.info("Adding finalizer to %s", obj.ref)
                    conditions.initialize_object_status(obj)
                    return ReconcileResult(requeue=True)

                if settings.disabled:
                    _LOGGER.error(
                        "Can't reconcile %s: %s", obj.ref, conditions.MSG_DISABLED
                    )
                    self._events.event(
                        obj,
                        EventType.WARNING,
                        Reason.RECONCILIATION_DISABLED,
                        conditions.MSG_DISABLED,
                    )
                    return ReconcileResult()

                return await self._reconcile(obj, attempt)  # type: ignore[arg-type]

    @abstractmethod
    async def _reconcile(self, obj: T, attempt: ReconcileAttempt) -> ReconcileResult:
        """Reconcile an initialized and enabled object."""

    def _mark_build_failed(self, obj: ManagedObject, message: str) -> None:
        """Record a terminal configuration error."""
        conditions.mark_false(
            obj, conditions.READY_CONDITION, Reason.BUILD_FAILED, message
        )
        conditions.mark_stalled(obj, Reason.BUILD_FAILED, message)
        _LOGGER.error("%s: %s", obj.ref, message)
        self._events.event(obj, EventType.WARNING, Reason.BUILD_FAILED, message)

    def _mark_failed(self, obj: ManagedObject, reason: str, message: str) -> None:
        """Record a transient failure that will be retried."""
        conditions.mark_false(obj, conditions.READY_CONDITION, reason, message)
        self._events.event(obj, EventType.WARNING, reason, message)

    def _mark_succeeded(self, obj: ManagedObject, start: float) -> str:
        message = elapsed_message("Reconciliation finished", start)
        conditions.mark_true(
            obj,
            conditions.READY_CONDITION,
            Reason.RECONCILIATION_SUCCEEDED,
            message,
        )
        _LOGGER.info("%s: %s", obj.ref, message)
        return message

    async def _uninstall(self, obj: ManagedObject) -> ReconcileResult:
        """Delete the owned resources and release the finalizer."""
        start = monotonic()
        try:
            disabled = obj.is_disabled()
        except InvalidAnnotationError:
            disabled = False
        inventory = obj.get_inventory()
        if disabled or inventory is None or not inventory.entries:
            obj.remove_finalizer()
            return ReconcileResult()

        # A failed prune still releases the finalizer so the object can go.
        with trace_context("uninstall"):
            try:
                delete_set = await self._engine.uninstall(obj)
            except ConvergeException as err:
                _LOGGER.error("Pruning for deleted %s failed: %s", obj.ref, err)
                delete_set = ChangeSet()
        obj.remove_finalizer()
        _LOGGER.info(
            "%s: %s %s",
            obj.ref,
            elapsed_message("Uninstallation completed", start),
            delete_set.to_map(),
        )
        return ReconcileResult()
