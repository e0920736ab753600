"""Controllers reconciling managed objects against the store.

Each controller implements `Reconciler.reconcile` for one kind and the
`Manager` drives them from store events.
"""

from .artifact import FluxInstanceArtifactReconciler
from .common import ManagedObjectReconciler, Reconciler, reconcile_attempt
from .fluxinstance import FluxInstanceReconciler
from .manager import Manager
from .report import FluxReportReconciler
from .resourcegroup import ResourceGroupReconciler

__all__ = [
    "FluxInstanceArtifactReconciler",
    "FluxInstanceReconciler",
    "FluxReportReconciler",
    "ManagedObjectReconciler",
    "Manager",
    "Reconciler",
    "ResourceGroupReconciler",
    "reconcile_attempt",
]
