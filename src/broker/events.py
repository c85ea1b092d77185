"""
Broker Events - typed notifications published by every broker operation
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, Any, List, Callable

logger = logging.getLogger("quorum.broker.events")


class EventType(str, Enum):
    """Broker event types"""
    NEW_SERVICE_AGREEMENT = "new_service_agreement"
    SERVICE_AGREEMENT_DELETED = "service_agreement_deleted"
    AGGREGATION_REQUESTED = "aggregation_requested"
    SUB_REQUEST_DISPATCHED = "sub_request_dispatched"
    RESPONSE_RECORDED = "response_recorded"
    REQUEST_FINALIZED = "request_finalized"
    CALLBACK_FAILED = "callback_failed"
    SUB_REQUEST_CANCELLED = "sub_request_cancelled"
    REQUEST_CANCELLED = "request_cancelled"
    FUNDS_WITHDRAWN = "funds_withdrawn"


@dataclass
class BrokerEvent:
    """A single published event"""
    event_type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class EventBus:
    """
    Fan-out of broker events to listeners; listener errors never propagate.

    Only the most recent history_size events are kept in memory; the audit
    sink is the durable record.
    """

    def __init__(self, history_size: int = 1000):
        self._listeners: List[Callable] = []
        self.history: Deque[BrokerEvent] = deque(maxlen=history_size)

    def subscribe(self, listener: Callable):
        self._listeners.append(listener)

    async def publish(self, event_type: EventType, **payload) -> BrokerEvent:
        event = BrokerEvent(event_type=event_type, payload=payload)
        self.history.append(event)

        for listener in self._listeners:
            try:
                if asyncio.iscoroutinefunction(listener):
                    await listener(event)
                else:
                    listener(event)
            except Exception as e:
                logger.error(f"Event listener error for {event_type.value}: {e}")

        return event

    def events_of(self, event_type: EventType) -> List[BrokerEvent]:
        return [e for e in self.history if e.event_type == event_type]
