"""
Outbound workflow events and the in-process bus that fans them out.

Events are frozen dataclasses, one class per kind; the bus dispatches on the
event's class.  Publishing always happens after the owning transaction has
committed, and a failing subscriber is logged without affecting the publisher
or the other subscribers.

The bus instance lives on ``app.extensions["workflow_events"]`` (created by
``create_app``); services reach it through ``get_event_bus()``.

Usage:
    bus = get_event_bus()
    bus.subscribe(StuckProject, handle_stuck)
    bus.publish(StuckProject(project_id="p-1", phase_index=3, days_stuck=10))
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, ClassVar

from flask import current_app

logger = logging.getLogger(__name__)

EXTENSION_KEY = "workflow_events"


class TransitionTrigger(str, Enum):
    MANUAL_ADMIN = "manual-admin"
    MANUAL_CLIENT = "manual-client"
    AUTOMATIC_GATE = "automatic-gate"
    AUTOMATIC_PAYMENT = "automatic-payment"
    AUTOMATIC_STUCK = "automatic-stuck"

    @property
    def is_automatic(self) -> bool:
        return self.value.startswith("automatic-")


# ═════════════════════════════════════════════════════════════════════════════
# Event types
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TransitionOccurred:
    event_type: ClassVar[str] = "transition-occurred"
    project_id: str
    from_phase: int
    to_phase: int
    trigger: TransitionTrigger
    timestamp: datetime
    actor_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "from_phase": self.from_phase,
            "to_phase": self.to_phase,
            "trigger": self.trigger.value,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
        }


@dataclass(frozen=True)
class StuckProject:
    event_type: ClassVar[str] = "stuck-project"
    project_id: str
    phase_index: int
    days_stuck: int

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "phase_index": self.phase_index,
            "days_stuck": self.days_stuck,
        }


@dataclass(frozen=True)
class GateSatisfied:
    event_type: ClassVar[str] = "gate-satisfied"
    project_id: str
    phase_index: int

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "phase_index": self.phase_index,
        }


@dataclass(frozen=True)
class ActionReminder:
    event_type: ClassVar[str] = "action-reminder"
    project_id: str
    phase_index: int
    days_in_phase: int
    pending_actions: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "project_id": self.project_id,
            "phase_index": self.phase_index,
            "days_in_phase": self.days_in_phase,
            "pending_actions": list(self.pending_actions),
        }


WORKFLOW_EVENT_TYPES = (TransitionOccurred, StuckProject, GateSatisfied, ActionReminder)


# ═════════════════════════════════════════════════════════════════════════════
# Bus
# ═════════════════════════════════════════════════════════════════════════════

class EventBus:
    """Synchronous, in-process publish/subscribe keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: type, handler: Callable) -> None:
        if event_type not in WORKFLOW_EVENT_TYPES:
            raise ValueError(f"Unknown workflow event type: {event_type!r}")
        with self._lock:
            if handler not in self._handlers[event_type]:
                self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Callable) -> None:
        with self._lock:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

    def handlers_for(self, event_type: type) -> list[Callable]:
        with self._lock:
            return list(self._handlers[event_type])

    def publish(self, event) -> int:
        """Deliver ``event`` to every subscriber of its class.

        Returns the number of handlers that completed without raising.
        """
        delivered = 0
        for handler in self.handlers_for(type(event)):
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Workflow event handler %s failed",
                    getattr(handler, "__name__", repr(handler)),
                    extra={
                        "event_type": event.event_type,
                        "project_id": getattr(event, "project_id", None),
                    },
                )
        return delivered

    def publish_all(self, events) -> int:
        return sum(self.publish(e) for e in events)


def get_event_bus() -> EventBus:
    return current_app.extensions[EXTENSION_KEY]
