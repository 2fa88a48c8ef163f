"""
Domain state transition events for the API/UI layer.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, List, Optional

from .models import CustomDomain

logger = logging.getLogger("customdomain.domains.events")


@dataclass
class DomainEvent:
    """A single state change on a custom domain."""

    domain_id: str
    team_id: str
    hostname: str
    attribute: str
    old: Optional[str]
    new: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "domain_id": self.domain_id,
            "team_id": self.team_id,
            "hostname": self.hostname,
            "attribute": self.attribute,
            "old": self.old,
            "new": self.new,
            "at": self.at.isoformat(),
            "detail": self.detail,
        }


Listener = Callable[[DomainEvent], None]


class DomainEventBus:
    """Fans out domain events to subscribers and keeps recent history."""

    def __init__(self, history_size: int = 1000):
        self._listeners: List[Listener] = []
        self._history: Deque[DomainEvent] = deque(maxlen=history_size)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: DomainEvent) -> None:
        self._history.append(event)
        logger.info(
            f"{event.hostname}: {event.attribute} {event.old} -> {event.new}"
            + (f" ({event.detail})" if event.detail else "")
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed for {event.hostname}")

    def record_created(self, domain: CustomDomain, at: Optional[datetime] = None) -> None:
        self.emit(DomainEvent(
            domain_id=domain.id,
            team_id=domain.team_id,
            hostname=domain.hostname,
            attribute="status",
            old=None,
            new=domain.status.value,
            at=at or datetime.now(timezone.utc),
        ))

    def record_changes(
        self,
        before: CustomDomain,
        after: CustomDomain,
        at: Optional[datetime] = None,
        detail: Optional[str] = None,
    ) -> List[DomainEvent]:
        """Emit one event per changed state field between two snapshots."""
        at = at or datetime.now(timezone.utc)
        emitted = []
        for name in ("status", "ssl_status"):
            old, new = getattr(before, name), getattr(after, name)
            if old != new:
                event = DomainEvent(
                    domain_id=after.id,
                    team_id=after.team_id,
                    hostname=after.hostname,
                    attribute=name,
                    old=old.value,
                    new=new.value,
                    at=at,
                    detail=detail,
                )
                self.emit(event)
                emitted.append(event)
        return emitted

    def recent(self, domain_id: Optional[str] = None, limit: int = 50) -> List[DomainEvent]:
        """Most recent events, newest last, optionally for one domain."""
        events = [
            e for e in self._history
            if domain_id is None or e.domain_id == domain_id
        ]
        return events[-limit:]
