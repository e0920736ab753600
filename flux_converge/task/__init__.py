"""Task tracking module for flux-converge.

This module provides a task tracking service with an optional concurrency
limit that the controller manager uses as its worker pool.
"""

from .service import TaskService, TaskServiceImpl

__all__ = ["TaskService", "TaskServiceImpl"]
