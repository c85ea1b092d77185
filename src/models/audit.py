import json
import logging
from sqlalchemy import Column, String, Text, DateTime
from datetime import datetime
from typing import Callable, List, Optional

from .database import Base
from src.broker.events import BrokerEvent
from src.middleware.correlation import get_correlation_id

logger = logging.getLogger("quorum.audit")


class BrokerEventRecord(Base):
    """Audit trail of broker events"""
    __tablename__ = "broker_events"

    event_id = Column(String(36), primary_key=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    request_id = Column(String(66), nullable=True, index=True)
    agreement_id = Column(String(66), nullable=True, index=True)
    correlation_id = Column(String(64), nullable=True, index=True)
    payload_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class AuditSink:
    """EventBus listener that persists every event in its own session,
    tagged with the correlation ID of the call that produced it"""

    def __init__(self, session_factory: Callable):
        self.session_factory = session_factory

    def __call__(self, event: BrokerEvent):
        db = self.session_factory()
        try:
            db.add(BrokerEventRecord(
                event_id=event.event_id,
                event_type=event.event_type.value,
                request_id=event.payload.get("request_id"),
                agreement_id=event.payload.get("agreement_id"),
                correlation_id=get_correlation_id(),
                payload_json=json.dumps(event.payload, default=str),
                created_at=event.timestamp,
            ))
            db.commit()
        except Exception:
            db.rollback()
            logger.error(f"Failed to persist event {event.event_id} ({event.event_type.value})")
            raise
        finally:
            db.close()

    def history(self, request_id: Optional[str] = None) -> List[BrokerEventRecord]:
        db = self.session_factory()
        try:
            query = db.query(BrokerEventRecord)
            if request_id:
                query = query.filter(BrokerEventRecord.request_id == request_id)
            return query.order_by(BrokerEventRecord.created_at).all()
        finally:
            db.close()
