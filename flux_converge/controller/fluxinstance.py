"""FluxInstance controller.

Installs and upgrades a software distribution rendered by an injected
`DistributionBuilder`. The revision of each attempt is recorded before the
apply so that an interrupted upgrade can be told apart from a completed one,
and moving to an older version than the applied one is refused.
"""

import logging
from time import monotonic

from flux_converge import conditions
from flux_converge.annotations import REVISION_ANNOTATION
from flux_converge.artifact import ArtifactResolver, Auth, get_auth_from_secret
from flux_converge.builder import (
    BuildResult,
    DistributionBuilder,
    is_compatible_version,
    parse_version,
)
from flux_converge.conditions import Reason
from flux_converge.config import ControllerConfig
from flux_converge.context import trace_context
from flux_converge.events import EventRecorder, EventType
from flux_converge.exceptions import BuildException, ConvergeException
from flux_converge.manifest import FluxInstance, ResourceRef
from flux_converge.reporter import request_report_update
from flux_converge.scheduler import ReconcileResult
from flux_converge.store import Store

from .common import ManagedObjectReconciler, ReconcileAttempt

__all__ = [
    "FluxInstanceReconciler",
    "get_artifact_auth",
]

_LOGGER = logging.getLogger(__name__)

SECRET_KIND = "Secret"


class FluxInstanceReconciler(ManagedObjectReconciler[FluxInstance]):
    """Reconciles FluxInstance objects."""

    object_class = FluxInstance

    def __init__(
        self,
        store: Store,
        events: EventRecorder,
        builder: DistributionBuilder,
        config: ControllerConfig | None = None,
        resolver: ArtifactResolver | None = None,
    ) -> None:
        super().__init__(store, events, config)
        self._builder = builder
        self._resolver = resolver

    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        try:
            return await super().reconcile(ref)
        finally:
            try:
                await request_report_update(self._store, ref.namespace)
            except ConvergeException as err:
                _LOGGER.error("Failed to request report update: %s", err)

    async def _reconcile(
        self, obj: FluxInstance, attempt: ReconcileAttempt
    ) -> ReconcileResult:
        start = monotonic()
        conditions.mark_progressing(obj)
        await attempt.patch()

        try:
            digest = await self._fetch_digest(obj)
        except ConvergeException as err:
            self._mark_failed(obj, Reason.ARTIFACT_FAILED, f"fetch failed: {err}")
            raise

        try:
            build = self._build(obj)
        except BuildException as err:
            self._mark_build_failed(obj, f"build failed: {err}")
            return ReconcileResult()

        if obj.status.last_attempted_revision != build.revision:
            if obj.status.last_attempted_revision:
                message = f"Upgrading to revision {build.revision}"
            else:
                message = f"Installing revision {build.revision}"
            self._events.event(obj, EventType.NORMAL, Reason.PROGRESSING, message)
            obj.status.last_attempted_revision = build.revision
            await attempt.patch()

        with trace_context("apply"):
            try:
                result = await self._engine.apply(obj, build.objects)
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

        installed = not obj.status.last_applied_revision
        obj.status.last_applied_revision = obj.status.last_attempted_revision
        obj.status.last_artifact_revision = digest or None

        if changelog := result.changelog:
            verb = "installed" if installed else "updated"
            self._events.event(
                obj,
                EventType.NORMAL,
                Reason.RECONCILIATION_SUCCEEDED,
                f"Flux {build.version} {verb}\n{changelog}",
            )
        message = self._mark_succeeded(obj, start)
        self._events.event(
            obj,
            EventType.NORMAL,
            Reason.RECONCILIATION_SUCCEEDED,
            message,
            annotations={REVISION_ANNOTATION: build.revision},
        )
        return self._scheduler.result(
            self._scheduler.next_interval(obj.settings), jitter=True
        )

    def _build(self, obj: FluxInstance) -> BuildResult:
        """Resolve the version, refuse downgrades and render the manifests."""
        version = self._builder.resolve_version(obj)
        if last_applied := obj.status.last_applied_revision:
            is_compatible_version(last_applied, version)

        latest = self._builder.latest_version()
        if parse_version(latest) > parse_version(version):
            self._events.event(
                obj,
                EventType.WARNING,
                Reason.OUTDATED,
                f"Flux {version} is outdated, the latest stable version is {latest}",
            )
        return self._builder.build(obj, version)

    async def _fetch_digest(self, obj: FluxInstance) -> str:
        """Resolve the digest of the distribution artifact, if one is tracked."""
        url = obj.spec.distribution.artifact
        if not url or self._resolver is None:
            return ""
        auth = await get_artifact_auth(self._store, obj)
        digest = await self._resolver.resolve_digest(url, auth)
        _LOGGER.debug("%s: artifact %s at %s", obj.ref, url, digest)
        return digest


async def get_artifact_auth(store: Store, obj: FluxInstance) -> Auth | None:
    """Return the registry credentials from the artifact pull secret, if set."""
    distribution = obj.spec.distribution
    if not distribution.artifact or not distribution.artifact_pull_secret:
        return None
    secret = await store.get(
        ResourceRef(
            group="",
            kind=SECRET_KIND,
            namespace=obj.namespace,
            name=distribution.artifact_pull_secret,
            version="v1",
        )
    )
    return get_auth_from_secret(distribution.artifact, secret)
