"""ResourceGroup controller.

A ResourceGroup applies an inline list of resource templates rendered with
its inputs, after the objects it depends on exist and are ready.
"""

import logging
from time import monotonic

from flux_converge import conditions
from flux_converge.apply import ApplyResult
from flux_converge.builder import Builder, ResourceGroupBuilder
from flux_converge.conditions import Reason
from flux_converge.config import ControllerConfig
from flux_converge.context import trace_context
from flux_converge.dependency import check_dependencies
from flux_converge.events import EventRecorder, EventType
from flux_converge.exceptions import (
    BuildException,
    ConvergeException,
    DependencyNotReadyError,
)
from flux_converge.manifest import ResourceGroup
from flux_converge.scheduler import ReconcileResult
from flux_converge.store import Store

from .common import ManagedObjectReconciler, ReconcileAttempt

__all__ = [
    "ResourceGroupReconciler",
]

_LOGGER = logging.getLogger(__name__)


class ResourceGroupReconciler(ManagedObjectReconciler[ResourceGroup]):
    """Reconciles ResourceGroup objects."""

    object_class = ResourceGroup

    def __init__(
        self,
        store: Store,
        events: EventRecorder,
        config: ControllerConfig | None = None,
        builder: Builder | None = None,
    ) -> None:
        super().__init__(store, events, config)
        self._builder = builder or ResourceGroupBuilder()

    async def _reconcile(
        self, obj: ResourceGroup, attempt: ReconcileAttempt
    ) -> ReconcileResult:
        with trace_context("dependencies"):
            try:
                await check_dependencies(self._store, obj.get_dependencies())
            except DependencyNotReadyError as err:
                message = f"Retrying dependency check: {err}"
                if (
                    conditions.get_reason(obj, conditions.READY_CONDITION)
                    != Reason.DEPENDENCY_NOT_READY
                ):
                    _LOGGER.error("%s: dependency check failed: %s", obj.ref, err)
                    self._events.event(
                        obj, EventType.NORMAL, Reason.DEPENDENCY_NOT_READY, message
                    )
                conditions.mark_false(
                    obj,
                    conditions.READY_CONDITION,
                    Reason.DEPENDENCY_NOT_READY,
                    message,
                )
                return ReconcileResult(requeue_after=self._config.dependency_requeue)

        start = monotonic()
        conditions.mark_progressing(obj)
        await attempt.patch()

        try:
            resources = self._builder.render(obj.spec, obj.spec.inputs)
        except BuildException as err:
            self._mark_build_failed(obj, f"build failed: {err}")
            return ReconcileResult()

        def on_applied(result: ApplyResult) -> None:
            if changelog := result.changelog:
                self._events.event(
                    obj, EventType.NORMAL, Reason.APPLY_SUCCEEDED, changelog
                )

        with trace_context("apply"):
            try:
                result = await self._engine.apply(obj, resources, on_applied)
            except BuildException as err:
                self._mark_build_failed(obj, f"build failed: {err}")
                return ReconcileResult()
            except ConvergeException as err:
                self._mark_failed(
                    obj,
                    Reason.RECONCILIATION_FAILED,
                    f"reconciliation failed: {err}",
                )
                raise

        message = self._mark_succeeded(obj, start)
        self._events.event(
            obj, EventType.NORMAL, Reason.RECONCILIATION_SUCCEEDED, message
        )
        return self._scheduler.result(self._scheduler.next_interval(obj.settings))
