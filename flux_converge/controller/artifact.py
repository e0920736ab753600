"""FluxInstance artifact controller.

Polls the digest of the distribution artifact of a ready FluxInstance and
requests a reconciliation of the installer when the artifact moved.
"""

from datetime import datetime, timezone
import logging

from flux_converge import conditions
from flux_converge.annotations import RECONCILE_REQUEST_ANNOTATION
from flux_converge.artifact import ArtifactDriftDetector, ArtifactResolver
from flux_converge.conditions import Reason
from flux_converge.config import ControllerConfig
from flux_converge.context import trace_context
from flux_converge.events import EventRecorder, EventType
from flux_converge.exceptions import (
    ConvergeException,
    InputException,
    InvalidAnnotationError,
    ObjectNotFoundError,
)
from flux_converge.manifest import FluxInstance, ResourceRef
from flux_converge.scheduler import ReconcileResult, RequeueScheduler
from flux_converge.store import Store

from .common import Reconciler
from .fluxinstance import get_artifact_auth

__all__ = [
    "FluxInstanceArtifactReconciler",
]

_LOGGER = logging.getLogger(__name__)


def request_timestamp() -> str:
    """Return a reconcile request token, an RFC3339 time with sub-seconds."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class FluxInstanceArtifactReconciler(Reconciler):
    """Requests a FluxInstance reconciliation on distribution artifact drift."""

    def __init__(
        self,
        store: Store,
        events: EventRecorder,
        resolver: ArtifactResolver,
        config: ControllerConfig | None = None,
    ) -> None:
        self._store = store
        self._events = events
        self._detector = ArtifactDriftDetector(resolver)
        self._scheduler = RequeueScheduler(config)

    @property
    def kind(self) -> str:
        return FluxInstance.kind

    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        try:
            obj = FluxInstance.from_document(await self._store.get(ref))
        except ObjectNotFoundError:
            return ReconcileResult()
        except InputException as err:
            _LOGGER.error("Unable to parse %s: %s", ref, err)
            return ReconcileResult()

        try:
            settings = obj.settings
        except InvalidAnnotationError:
            return ReconcileResult()
        if obj.is_deleting() or settings.disabled:
            return ReconcileResult()
        if not (url := obj.spec.distribution.artifact):
            return ReconcileResult()

        result = self._scheduler.result(self._scheduler.next_artifact_interval(settings))
        last_digest = obj.status.last_artifact_revision
        if not last_digest or not conditions.is_ready(obj):
            return result

        with trace_context(f"{obj.ref} artifact"):
            try:
                auth = await get_artifact_auth(self._store, obj)
                digest, changed = await self._detector.should_reconcile(
                    url, last_digest, auth
                )
            except ConvergeException as err:
                message = f"fetch failed: {err}"
                _LOGGER.error("%s: %s", obj.ref, message)
                self._events.event(
                    obj, EventType.WARNING, Reason.ARTIFACT_FAILED, message
                )
                raise
            if not changed:
                return result

            _LOGGER.info(
                "%s: artifact digest changed from %s to %s, requesting reconciliation",
                obj.ref,
                last_digest,
                digest,
            )
            await self._store.patch(
                obj.ref,
                {
                    "metadata": {
                        "annotations": {
                            RECONCILE_REQUEST_ANNOTATION: request_timestamp()
                        }
                    }
                },
            )
        return result
