"""
pytest configuration for the quorum broker test suite
"""

import os
import sys
from datetime import datetime, timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from src.broker import (
    BrokerConfig,
    BrokerStore,
    CallbackRouter,
    InMemoryLedger,
    InMemoryProviderChannel,
    QuorumBroker,
)

ADMIN = "admin"
LEDGER = "ledger"
BROKER = "broker"
CONSUMER = "consumer"
STRANGER = "stranger"
PROVIDERS = ["oracle-1", "oracle-2", "oracle-3", "oracle-4"]
JOB_SPECS = ["job-a", "job-b", "job-c", "job-d"]
FEE = 1
TOTAL_FEE = 4


class FakeClock:
    """Manually advanced clock for expiration tests"""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float):
        self.current = self.current + timedelta(seconds=seconds)


class RecordingConsumer:
    """Callback handler that remembers every delivery"""

    def __init__(self):
        self.deliveries = []

    def __call__(self, request_id, value):
        self.deliveries.append((request_id, value))

    @property
    def current_value(self):
        return self.deliveries[-1][1] if self.deliveries else None


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return InMemoryLedger(identity=LEDGER, balances={CONSUMER: 20, STRANGER: 20})


@pytest.fixture
def channel():
    return InMemoryProviderChannel()


@pytest.fixture
def consumer():
    return RecordingConsumer()


@pytest.fixture
def broker(ledger, channel, clock, consumer):
    """Broker wired to an in-memory ledger and provider queues"""
    config = BrokerConfig(admin_id=ADMIN, ledger_id=LEDGER, broker_id=BROKER, expiration_window=300)
    callbacks = CallbackRouter()
    callbacks.register(CONSUMER, consumer)
    return QuorumBroker(
        ledger=ledger,
        channel=channel,
        callbacks=callbacks,
        store=BrokerStore(config, clock=clock),
    )


async def create_agreement(broker, min_responses=3, providers=None, fees=None):
    return await broker.create_service_agreement(
        ADMIN,
        min_responses,
        providers or list(PROVIDERS),
        list(JOB_SPECS[:len(providers or PROVIDERS)]),
        fees or [FEE] * len(providers or PROVIDERS),
    )


async def deposit(broker, ledger, agreement_id, amount=TOTAL_FEE, nonce=1, sender=CONSUMER, callback_target=None):
    data = {"agreement_id": agreement_id, "nonce": nonce}
    if callback_target:
        data["callback_target"] = callback_target
    return await ledger.transfer_and_call(sender, BROKER, amount, data)
