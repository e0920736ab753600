"""Status condition helpers and the reconciliation condition state machine.

A managed object carries at most one condition of each type. The core owns
three types:

- `Ready` summarises the outcome of the last reconciliation.
- `Reconciling` is present while the object converges or after a transient
  failure that will be retried.
- `Stalled` marks a terminal failure that requires a spec change.
"""

from enum import StrEnum
import logging
from typing import Protocol

from .manifest import Condition, FINALIZER, now_rfc3339

__all__ = [
    "ConditionStatus",
    "Reason",
    "mark_true",
    "mark_false",
    "mark_unknown",
    "initialize_object_status",
    "finalize_object_status",
]

_LOGGER = logging.getLogger(__name__)

READY_CONDITION = "Ready"
RECONCILING_CONDITION = "Reconciling"
STALLED_CONDITION = "Stalled"

OWNED_CONDITIONS = (READY_CONDITION, RECONCILING_CONDITION, STALLED_CONDITION)

MSG_IN_PROGRESS = "Reconciliation in progress"
MSG_INIT_SUSPENDED = "Initialized with reconciliation suspended"
MSG_DISABLED = "Reconciliation is disabled"


class ConditionStatus(StrEnum):
    """Status value of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Reason(StrEnum):
    """Reason codes shared by every managed object kind."""

    PROGRESSING = "Progressing"
    PROGRESSING_WITH_RETRY = "ProgressingWithRetry"
    RECONCILIATION_SUCCEEDED = "ReconciliationSucceeded"
    RECONCILIATION_FAILED = "ReconciliationFailed"
    RECONCILIATION_DISABLED = "ReconciliationDisabled"
    BUILD_FAILED = "BuildFailed"
    DEPENDENCY_NOT_READY = "DependencyNotReady"
    ARTIFACT_FAILED = "ArtifactFailed"
    HEALTH_CHECK_FAILED = "HealthCheckFailed"
    APPLY_SUCCEEDED = "ApplySucceeded"
    UNINSTALL_SUCCEEDED = "UninstallSucceeded"
    OUTDATED = "Outdated"
    SUCCEEDED = "Succeeded"


class ConditionsObject(Protocol):
    """An object that exposes status conditions."""

    def get_conditions(self) -> list[Condition]: ...

    def set_conditions(self, conditions: list[Condition]) -> None: ...


class LifecycleObject(ConditionsObject, Protocol):
    """Conditions plus the lifecycle capabilities of a managed object."""

    def is_disabled(self) -> bool: ...

    def add_finalizer(self, finalizer: str = FINALIZER) -> None: ...

    def get_reconcile_request(self) -> str | None: ...

    def set_last_handled_reconcile_at(self, value: str) -> None: ...


def get(obj: ConditionsObject, condition_type: str) -> Condition | None:
    """Return the condition of the given type, if present."""
    for condition in obj.get_conditions():
        if condition.type == condition_type:
            return condition
    return None


def has(obj: ConditionsObject, condition_type: str) -> bool:
    return get(obj, condition_type) is not None


def is_true(obj: ConditionsObject, condition_type: str) -> bool:
    return (c := get(obj, condition_type)) is not None and c.status == ConditionStatus.TRUE


def is_false(obj: ConditionsObject, condition_type: str) -> bool:
    return (c := get(obj, condition_type)) is not None and c.status == ConditionStatus.FALSE


def is_ready(obj: ConditionsObject) -> bool:
    return is_true(obj, READY_CONDITION)


def get_reason(obj: ConditionsObject, condition_type: str) -> str | None:
    if (condition := get(obj, condition_type)) is None:
        return None
    return condition.reason


def set_condition(obj: ConditionsObject, condition: Condition) -> None:
    """Add or replace the condition of the same type.

    The last transition time is kept when the status value does not change.
    """
    conditions = obj.get_conditions()
    for i, existing in enumerate(conditions):
        if existing.type != condition.type:
            continue
        if existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        conditions[i] = condition
        obj.set_conditions(conditions)
        return
    obj.set_conditions(conditions + [condition])


def delete(obj: ConditionsObject, condition_type: str) -> None:
    obj.set_conditions([c for c in obj.get_conditions() if c.type != condition_type])


def _generation(obj: ConditionsObject) -> int:
    if (metadata := getattr(obj, "metadata", None)) is not None:
        return int(getattr(metadata, "generation", 0))
    return 0


def _mark(
    obj: ConditionsObject,
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
) -> None:
    set_condition(
        obj,
        Condition(
            type=condition_type,
            status=str(status),
            reason=str(reason),
            message=message,
            last_transition_time=now_rfc3339(),
            observed_generation=_generation(obj),
        ),
    )


def mark_true(obj: ConditionsObject, condition_type: str, reason: str, message: str) -> None:
    _mark(obj, condition_type, ConditionStatus.TRUE, reason, message)


def mark_false(obj: ConditionsObject, condition_type: str, reason: str, message: str) -> None:
    _mark(obj, condition_type, ConditionStatus.FALSE, reason, message)


def mark_unknown(obj: ConditionsObject, condition_type: str, reason: str, message: str) -> None:
    _mark(obj, condition_type, ConditionStatus.UNKNOWN, reason, message)


def mark_reconciling(obj: ConditionsObject, reason: str, message: str) -> None:
    """Mark the object as converging, clearing any stale Stalled condition."""
    delete(obj, STALLED_CONDITION)
    mark_true(obj, RECONCILING_CONDITION, reason, message)


def mark_stalled(obj: ConditionsObject, reason: str, message: str) -> None:
    """Mark a terminal failure. Stalled implies not Ready and not Reconciling."""
    delete(obj, RECONCILING_CONDITION)
    mark_true(obj, STALLED_CONDITION, reason, message)


def mark_progressing(obj: ConditionsObject) -> None:
    """Record the start of a reconciliation attempt."""
    mark_unknown(obj, READY_CONDITION, Reason.PROGRESSING, MSG_IN_PROGRESS)
    mark_reconciling(obj, Reason.PROGRESSING, MSG_IN_PROGRESS)


def initialize_object_status(obj: LifecycleObject) -> None:
    """Initialize an object seen for the first time.

    The finalizer is added and the Ready condition is set depending on
    whether reconciliation is disabled.
    """
    obj.add_finalizer(FINALIZER)
    if obj.is_disabled():
        mark_true(obj, READY_CONDITION, Reason.RECONCILIATION_DISABLED, MSG_INIT_SUSPENDED)
    else:
        mark_progressing(obj)


def finalize_object_status(obj: LifecycleObject) -> None:
    """Update the status at the end of every reconciliation attempt."""
    if request := obj.get_reconcile_request():
        obj.set_last_handled_reconcile_at(request)

    # Failed attempts keep Reconciling with a reason showing it will be retried.
    if is_false(obj, READY_CONDITION) and (
        reconciling := get(obj, RECONCILING_CONDITION)
    ):
        reconciling.reason = str(Reason.PROGRESSING_WITH_RETRY)

    if is_true(obj, READY_CONDITION) or is_true(obj, STALLED_CONDITION):
        delete(obj, RECONCILING_CONDITION)
