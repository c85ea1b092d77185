# tests/test_audit.py
"""
Tests for the in-memory event history and the SQL audit trail of broker events
"""

import json

import pytest
from sqlalchemy.orm import sessionmaker

from src.broker import BrokerConfig, BrokerStore, EventBus, EventType
from src.middleware import correlation_scope
from src.models import AuditSink, Base, build_engine

from conftest import create_agreement, deposit


@pytest.fixture
def audit_sink(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield AuditSink(session_factory)
    engine.dispose()


@pytest.mark.asyncio
async def test_events_are_persisted(broker, ledger, audit_sink):
    broker.events.subscribe(audit_sink)

    agreement_id = await create_agreement(broker)
    request_id = await deposit(broker, ledger, agreement_id)

    records = audit_sink.history()
    event_types = [r.event_type for r in records]
    assert EventType.NEW_SERVICE_AGREEMENT.value in event_types
    assert EventType.AGGREGATION_REQUESTED.value in event_types
    assert event_types.count(EventType.SUB_REQUEST_DISPATCHED.value) == 4

    request_records = audit_sink.history(request_id=request_id)
    assert len(request_records) == 5
    opened = [r for r in request_records if r.event_type == EventType.AGGREGATION_REQUESTED.value][0]
    assert opened.agreement_id == agreement_id
    assert json.loads(opened.payload_json)["escrow"] == 4


@pytest.mark.asyncio
async def test_sink_failure_does_not_break_broker(broker, ledger):
    def broken_session():
        raise RuntimeError("database unavailable")

    broker.events.subscribe(AuditSink(broken_session))

    agreement_id = await create_agreement(broker)
    request_id = await deposit(broker, ledger, agreement_id)

    assert broker.get_request(request_id) is not None


@pytest.mark.asyncio
async def test_records_carry_correlation_id(broker, audit_sink):
    broker.events.subscribe(audit_sink)

    with correlation_scope("corr-admin-call"):
        agreement_id = await create_agreement(broker)

    record = [r for r in audit_sink.history() if r.agreement_id == agreement_id][0]
    assert record.correlation_id == "corr-admin-call"


@pytest.mark.asyncio
async def test_event_history_keeps_most_recent():
    bus = EventBus(history_size=3)

    for index in range(5):
        await bus.publish(EventType.RESPONSE_RECORDED, index=index)

    assert len(bus.history) == 3
    assert [e.payload["index"] for e in bus.history] == [2, 3, 4]


@pytest.mark.asyncio
async def test_listeners_see_events_dropped_from_history(audit_sink):
    bus = EventBus(history_size=2)
    bus.subscribe(audit_sink)

    for index in range(4):
        await bus.publish(EventType.FUNDS_WITHDRAWN, amount=index)

    assert len(bus.history) == 2
    assert len(audit_sink.history()) == 4


def test_store_history_size_follows_config():
    store = BrokerStore(BrokerConfig(event_history_size=10))

    assert store.events.history.maxlen == 10
