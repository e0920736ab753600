"""FluxReport controller.

Computes the report of the installation in the namespace of a FluxReport on
an interval and whenever a reconciliation is requested through annotations.
"""

import logging
from time import monotonic

from flux_converge import conditions
from flux_converge.conditions import Reason
from flux_converge.config import ControllerConfig
from flux_converge.context import trace_context
from flux_converge.exceptions import (
    InputException,
    InvalidAnnotationError,
    ObjectNotFoundError,
)
from flux_converge.manifest import (
    API_VERSION,
    DEFAULT_INSTANCE_NAME,
    FluxReport,
    ResourceRef,
)
from flux_converge.reporter import compute_report
from flux_converge.scheduler import ReconcileResult, RequeueScheduler
from flux_converge.store import ApplyOptions, Store

from .common import Reconciler, elapsed_message, reconcile_attempt

__all__ = [
    "FluxReportReconciler",
]

_LOGGER = logging.getLogger(__name__)


class FluxReportReconciler(Reconciler):
    """Reconciles FluxReport objects."""

    def __init__(self, store: Store, config: ControllerConfig | None = None) -> None:
        self._store = store
        self._config = config or ControllerConfig()
        self._scheduler = RequeueScheduler(self._config)

    @property
    def kind(self) -> str:
        return FluxReport.kind

    async def init_report(
        self, namespace: str, name: str = DEFAULT_INSTANCE_NAME
    ) -> ResourceRef:
        """Create an empty report in the namespace unless one exists."""
        doc = {
            "apiVersion": API_VERSION,
            "kind": FluxReport.kind,
            "metadata": {"name": name, "namespace": namespace},
        }
        ref = ResourceRef.from_doc(doc)
        try:
            await self._store.get(ref)
        except ObjectNotFoundError:
            await self._store.apply(
                doc, ApplyOptions(field_manager=self._config.status_manager)
            )
            _LOGGER.info("Initialized %s", ref)
        return ref

    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        try:
            doc = await self._store.get(ref)
        except ObjectNotFoundError:
            _LOGGER.debug("%s not found, nothing to report", ref)
            return ReconcileResult()
        try:
            obj = FluxReport.from_document(doc)
        except InputException as err:
            _LOGGER.error("Unable to parse %s: %s", ref, err)
            return ReconcileResult()

        with trace_context(str(obj.ref)):
            async with reconcile_attempt(self._store, obj):
                try:
                    settings = obj.settings
                except InvalidAnnotationError as err:
                    message = f"invalid annotations: {err}"
                    conditions.mark_false(
                        obj, conditions.READY_CONDITION, Reason.BUILD_FAILED, message
                    )
                    conditions.mark_stalled(obj, Reason.BUILD_FAILED, message)
                    _LOGGER.error("%s: %s", obj.ref, message)
                    return ReconcileResult()

                if settings.disabled:
                    _LOGGER.info(
                        "Reconciliation of %s is disabled, skipping the report",
                        obj.ref,
                    )
                    return ReconcileResult()

                start = monotonic()
                report = await compute_report(self._store, obj.namespace)
                obj.status.distribution = report.distribution
                obj.status.reconcilers = report.reconcilers
                conditions.delete(obj, conditions.STALLED_CONDITION)
                message = elapsed_message("Reporting finished", start)
                conditions.mark_true(
                    obj, conditions.READY_CONDITION, Reason.SUCCEEDED, message
                )
                _LOGGER.debug("%s: %s", obj.ref, message)

        interval = settings.interval
        if interval is None:
            interval = self._config.report_interval
        return self._scheduler.result(interval)
