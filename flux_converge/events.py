"""Notification of reconciliation transitions to operators."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
import logging

from .manifest import ManagedObject, ResourceRef

__all__ = [
    "EventType",
    "Event",
    "EventRecorder",
    "MemoryEventRecorder",
]

_LOGGER = logging.getLogger(__name__)


class EventType(StrEnum):
    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class Event:
    """A recorded event about a managed object."""

    ref: ResourceRef
    type: EventType
    reason: str
    message: str
    annotations: dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.type} {self.reason} {self.ref}: {self.message}"


class EventRecorder(ABC):
    """Sink for events about managed objects."""

    @abstractmethod
    def event(
        self,
        obj: ManagedObject,
        event_type: EventType,
        reason: str,
        message: str,
        annotations: dict[str, str] | None = None,
    ) -> None:
        """Record an event."""


class MemoryEventRecorder(EventRecorder):
    """Records events in memory and logs them."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def event(
        self,
        obj: ManagedObject,
        event_type: EventType,
        reason: str,
        message: str,
        annotations: dict[str, str] | None = None,
    ) -> None:
        event = Event(obj.ref, event_type, reason, message, dict(annotations or {}))
        if event_type == EventType.WARNING:
            _LOGGER.warning("%s", event)
        else:
            _LOGGER.info("%s", event)
        self.events.append(event)

    def reasons(self) -> list[str]:
        return [event.reason for event in self.events]

    def clear(self) -> None:
        self.events.clear()
