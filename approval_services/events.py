"""
Event sinks for post-commit domain events.

``InMemoryEventSink`` collects events for tests and embedded hosts;
``LoggingEventSink`` writes each event as a structured log record so a
log pipeline can forward it.
"""

from __future__ import annotations

from approval_kernel.domain.events import DomainEvent
from approval_kernel.logging_config import get_logger

logger = get_logger("services.events")


class InMemoryEventSink:
    """Keeps published events in publication order."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> list[DomainEvent]:
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventSink:
    def publish(self, event: DomainEvent) -> None:
        logger.info(
            "domain_event",
            extra={
                "event_name": event.name,
                "event_id": str(event.event_id),
                "subject_id": str(event.subject_id),
                "occurred_at": event.occurred_at.isoformat(),
                "payload": event.payload,
            },
        )
