"""Computes when a managed object is reconciled again."""

from dataclasses import dataclass
from datetime import timedelta
import random

from .annotations import ReconcileSettings
from .config import ControllerConfig

__all__ = [
    "ReconcileResult",
    "RequeueScheduler",
    "jittered",
]

JITTER_FACTOR = 0.05


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a reconcile call returned to the manager."""

    requeue: bool = False
    """Enqueue again immediately."""

    requeue_after: timedelta | None = None
    """Enqueue again after a delay, None means no scheduled requeue."""


def jittered(interval: timedelta, factor: float = JITTER_FACTOR) -> timedelta:
    """Return the interval with up to +/- factor random jitter."""
    if interval <= timedelta(0):
        return interval
    return interval * (1 + random.uniform(-factor, factor))


class RequeueScheduler:
    """Pure mapping from validated reconcile settings to the next delay."""

    def __init__(self, config: ControllerConfig | None = None) -> None:
        self._config = config or ControllerConfig()

    def next_interval(self, settings: ReconcileSettings) -> timedelta:
        """Interval until the next periodic reconciliation, zero when disabled."""
        if settings.disabled:
            return timedelta(0)
        if settings.interval is not None:
            return settings.interval
        return self._config.default_interval

    def next_artifact_interval(self, settings: ReconcileSettings) -> timedelta:
        """Interval until the next artifact digest check, zero when disabled."""
        if settings.disabled:
            return timedelta(0)
        if settings.artifact_interval is not None:
            return settings.artifact_interval
        return self._config.default_artifact_interval

    def timeout(self, settings: ReconcileSettings) -> timedelta:
        return settings.timeout or self._config.default_timeout

    def result(self, interval: timedelta, jitter: bool = False) -> ReconcileResult:
        """Wrap an interval into a reconcile result."""
        if interval <= timedelta(0):
            return ReconcileResult()
        return ReconcileResult(requeue_after=jittered(interval) if jitter else interval)
