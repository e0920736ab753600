"""
The store module provides the live cluster state the convergence engine
drives toward the desired state.

- Uses ResourceRef as the key for all objects.
- Stores Kubernetes shaped documents with per manager field ownership.
- Provides get, apply, delete, patch and list APIs for the controllers.

This abstract interface allows for various implementations (in-memory, API
server backed, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .options import (
    ApplyOptions,
    ApplyCleanupOptions,
    DeleteOptions,
    FieldManager,
    ManagedFieldsOperation,
    PropagationPolicy,
)
from .status import Status, ResourceStatus, compute_status

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "ApplyOptions",
    "ApplyCleanupOptions",
    "DeleteOptions",
    "FieldManager",
    "ManagedFieldsOperation",
    "PropagationPolicy",
    "Status",
    "ResourceStatus",
    "compute_status",
]
