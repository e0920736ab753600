"""Typed view of the well-known annotations on a managed object.

Annotations are free-form strings on the object metadata. They are parsed
against a fixed set of recognized keys once per reconciliation:

| key | effect | default |
|-----|--------|---------|
| `fluxcd.controlplane.io/reconcile` | `disabled` stops reconciliation | `enabled` |
| `fluxcd.controlplane.io/reconcileEvery` | reconcile interval | 60m |
| `fluxcd.controlplane.io/reconcileArtifactEvery` | artifact poll interval | 10m |
| `fluxcd.controlplane.io/reconcileTimeout` | health check timeout | 5m |
| `reconcile.fluxcd.io/requestedAt` | reconciliation request token | |

Invalid values are rejected at admission with `validate_annotations` so that
the reconcile loop never needs to guess a fallback.
"""

from dataclasses import dataclass
from datetime import timedelta
import re

from .exceptions import InvalidAnnotationError

__all__ = [
    "ReconcileSettings",
    "parse_duration",
    "format_duration",
    "validate_annotations",
]

GROUP = "fluxcd.controlplane.io"

ENABLED_VALUE = "enabled"
DISABLED_VALUE = "disabled"

RECONCILE_ANNOTATION = f"{GROUP}/reconcile"
RECONCILE_EVERY_ANNOTATION = f"{GROUP}/reconcileEvery"
RECONCILE_ARTIFACT_EVERY_ANNOTATION = f"{GROUP}/reconcileArtifactEvery"
RECONCILE_TIMEOUT_ANNOTATION = f"{GROUP}/reconcileTimeout"
PRUNE_ANNOTATION = f"{GROUP}/prune"
REVISION_ANNOTATION = f"{GROUP}/revision"
RECONCILE_REQUEST_ANNOTATION = "reconcile.fluxcd.io/requestedAt"

DEFAULT_INTERVAL = timedelta(minutes=60)
DEFAULT_ARTIFACT_INTERVAL = timedelta(minutes=10)
DEFAULT_TIMEOUT = timedelta(minutes=5)

_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> timedelta:
    """Parse a duration string such as `1h30m`, `2m` or `500ms`.

    The accepted syntax is a sequence of decimal numbers each with a unit
    suffix. A bare `0` is also accepted.
    """
    text = value.strip()
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError("empty duration")
    sign = 1
    if text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    total = timedelta(0)
    pos = 0
    while pos < len(text):
        if not (match := _DURATION_PART.match(text, pos)):
            raise ValueError(f"invalid duration {value!r}")
        number, unit = match.groups()
        total += _UNITS[unit] * float(number)
        pos = match.end()
    return total * sign


def format_duration(value: timedelta) -> str:
    """Return a compact human-readable duration e.g. `1m30s` or `250ms`."""
    if value < timedelta(seconds=1):
        return f"{round(value.total_seconds() * 1000)}ms"
    seconds = round(value.total_seconds())
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    result = ""
    if hours:
        result += f"{hours}h"
    if hours or minutes:
        result += f"{minutes}m"
    return result + f"{seconds}s"


def _parse_duration_annotation(
    annotations: dict[str, str], key: str, *, allow_zero: bool
) -> timedelta | None:
    if (value := annotations.get(key)) is None:
        return None
    try:
        duration = parse_duration(value)
    except ValueError as err:
        raise InvalidAnnotationError(key, value, str(err)) from err
    if duration < timedelta(0) or (not allow_zero and duration == timedelta(0)):
        raise InvalidAnnotationError(key, value, "duration must be positive")
    return duration


@dataclass(frozen=True)
class ReconcileSettings:
    """Per-object reconciliation settings parsed from annotations.

    Durations are `None` when the annotation is not set, in which case the
    controller defaults apply.
    """

    disabled: bool = False
    """Reconciliation is disabled for the object."""

    interval: timedelta | None = None
    """Override of the periodic reconciliation interval."""

    artifact_interval: timedelta | None = None
    """Override of the artifact polling interval."""

    timeout: timedelta | None = None
    """Override of the health check timeout."""

    reconcile_request: str | None = None
    """Token of the last externally requested reconciliation."""

    @classmethod
    def parse(cls, annotations: dict[str, str] | None) -> "ReconcileSettings":
        """Parse the settings, raising InvalidAnnotationError on bad values."""
        annotations = annotations or {}
        disabled = False
        if (value := annotations.get(RECONCILE_ANNOTATION)) is not None:
            if value.lower() not in (ENABLED_VALUE, DISABLED_VALUE):
                raise InvalidAnnotationError(
                    RECONCILE_ANNOTATION,
                    value,
                    f"must be one of '{ENABLED_VALUE}' or '{DISABLED_VALUE}'",
                )
            disabled = value.lower() == DISABLED_VALUE
        return cls(
            disabled=disabled,
            interval=_parse_duration_annotation(
                annotations, RECONCILE_EVERY_ANNOTATION, allow_zero=True
            ),
            artifact_interval=_parse_duration_annotation(
                annotations, RECONCILE_ARTIFACT_EVERY_ANNOTATION, allow_zero=True
            ),
            timeout=_parse_duration_annotation(
                annotations, RECONCILE_TIMEOUT_ANNOTATION, allow_zero=False
            ),
            reconcile_request=annotations.get(RECONCILE_REQUEST_ANNOTATION) or None,
        )


def validate_annotations(annotations: dict[str, str] | None) -> None:
    """Admission check for the well-known annotations."""
    ReconcileSettings.parse(annotations)
    if (value := (annotations or {}).get(PRUNE_ANNOTATION)) is not None:
        if value.lower() not in (ENABLED_VALUE, DISABLED_VALUE):
            raise InvalidAnnotationError(
                PRUNE_ANNOTATION,
                value,
                f"must be one of '{ENABLED_VALUE}' or '{DISABLED_VALUE}'",
            )
