"""
Outbound events for the notification gateway.

The core only emits events; delivery to end users (push, e-mail, in-app)
belongs to whatever gateway is plugged in.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from models import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_PENDING = "booking_pending"
    BOOKING_DECLINED = "booking_declined"
    BOOKING_CANCELLED = "booking_cancelled"
    RIDE_CANCELLED = "ride_cancelled"


class RideEvent(BaseModel):
    type: EventType
    ride_id: str
    booking_id: Optional[str] = None
    actor_id: str
    occurred_at: datetime = Field(default_factory=utcnow)


class NotificationGateway:
    """Interface for event sinks. Implementations must not raise back into the core."""

    async def publish(self, event: RideEvent) -> None:
        raise NotImplementedError

    async def publish_all(self, events: List[RideEvent]) -> None:
        for event in events:
            try:
                await self.publish(event)
            except Exception:
                logger.exception("Failed to publish %s for ride %s", event.type.value, event.ride_id)


class LoggingNotificationGateway(NotificationGateway):
    """Default gateway: writes every event to the log."""

    async def publish(self, event: RideEvent) -> None:
        logger.info(
            "event=%s ride=%s booking=%s actor=%s",
            event.type.value,
            event.ride_id,
            event.booking_id,
            event.actor_id,
        )


class RecordingNotificationGateway(NotificationGateway):
    """Keeps published events in memory, in publish order."""

    def __init__(self):
        self.events: List[RideEvent] = []

    async def publish(self, event: RideEvent) -> None:
        self.events.append(event)

    def types(self) -> List[EventType]:
        return [event.type for event in self.events]
