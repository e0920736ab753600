"""Gate reconciliation on the existence and readiness of other objects."""

import logging

from .exceptions import DependencyNotReadyError, ObjectNotFoundError
from .manifest import Dependency
from .store import Status, Store, compute_status

__all__ = [
    "check_dependencies",
]

_LOGGER = logging.getLogger(__name__)


async def check_dependencies(store: Store, dependencies: list[Dependency]) -> None:
    """Check that every dependency exists and, when required, is ready.

    A dependency without a namespace refers to a cluster scoped object. The
    first failure is raised, so the caller never starts applying with only
    part of the dependencies satisfied.
    """
    for dep in dependencies:
        try:
            doc = await store.get(dep.ref)
        except ObjectNotFoundError as err:
            raise DependencyNotReadyError(dep.id_name, "not found") from err
        if not dep.ready:
            continue
        if (result := compute_status(doc)).status != Status.CURRENT:
            raise DependencyNotReadyError(
                dep.id_name, f"not ready: {result.message or result.status}"
            )
        _LOGGER.debug("Dependency %s is ready", dep.id_name)
