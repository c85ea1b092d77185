# tests/test_dispatcher.py
"""
Tests for deposit handling: replay protection, escrow validation, refunds
and sub-request fan-out
"""

import pytest

from src.broker import (
    EventType,
    InsufficientPayment,
    LedgerError,
    ReplayedNonce,
    RequestState,
    UnknownAgreement,
    WrongSender,
)
from src.broker.request import derive_request_id

from conftest import BROKER, CONSUMER, PROVIDERS, create_agreement, deposit


@pytest.mark.asyncio
async def test_exact_deposit_opens_request(broker, ledger, channel):
    agreement_id = await create_agreement(broker)

    request_id = await deposit(broker, ledger, agreement_id)

    request = broker.get_request(request_id)
    assert request_id == derive_request_id(CONSUMER, 1)
    assert request.state == RequestState.OPEN
    assert request.escrow_remaining == 4
    assert len(request.sub_requests) == 4
    assert ledger.balances[BROKER] == 4
    assert ledger.balances[CONSUMER] == 16
    assert broker.get_service_agreement(agreement_id).active_requests == 1

    for provider in PROVIDERS:
        assert channel.pending(provider) == 1

    descriptor = channel.queue_for(PROVIDERS[0]).get_nowait()
    assert descriptor.request_id == request_id
    assert descriptor.callback_address == BROKER
    assert descriptor.fee == 1


@pytest.mark.asyncio
async def test_overpayment_is_refunded(broker, ledger):
    agreement_id = await create_agreement(broker)

    request_id = await deposit(broker, ledger, agreement_id, amount=5)

    assert broker.get_request(request_id).escrow_remaining == 4
    assert ledger.balances[CONSUMER] == 16
    assert ledger.balances[BROKER] == 4

    event = broker.events.events_of(EventType.AGGREGATION_REQUESTED)[0]
    assert event.payload["refund"] == 1


@pytest.mark.asyncio
async def test_underpayment_reverts_deposit(broker, ledger):
    agreement_id = await create_agreement(broker)

    with pytest.raises(InsufficientPayment):
        await deposit(broker, ledger, agreement_id, amount=3)

    assert ledger.balances[CONSUMER] == 20
    assert ledger.balances.get(BROKER, 0) == 0
    assert broker.store.requests == {}
    assert broker.store.consumed_nonces == set()


@pytest.mark.asyncio
async def test_replayed_nonce_rejected(broker, ledger):
    agreement_id = await create_agreement(broker)
    await deposit(broker, ledger, agreement_id, nonce=7)

    with pytest.raises(ReplayedNonce):
        await deposit(broker, ledger, agreement_id, nonce=7)

    assert len(broker.store.requests) == 1
    assert ledger.balances[CONSUMER] == 16


@pytest.mark.asyncio
async def test_same_nonce_from_different_callers(broker, ledger):
    agreement_id = await create_agreement(broker)

    first = await deposit(broker, ledger, agreement_id, nonce=1)
    second = await deposit(broker, ledger, agreement_id, nonce=1, sender="stranger")

    assert first != second
    assert broker.get_service_agreement(agreement_id).active_requests == 2


@pytest.mark.asyncio
async def test_unknown_agreement_rejected(broker, ledger):
    with pytest.raises(UnknownAgreement):
        await deposit(broker, ledger, "0xmissing")

    assert ledger.balances[CONSUMER] == 20


@pytest.mark.asyncio
async def test_wrong_sender_rejected(broker):
    agreement_id = await create_agreement(broker)

    with pytest.raises(WrongSender) as exc:
        await broker.on_token_transfer("counterfeit-ledger", CONSUMER, 4, {
            "agreement_id": agreement_id,
            "nonce": 1,
        })

    assert exc.value.message == "Must use the recognized ledger"
    assert broker.store.requests == {}


@pytest.mark.asyncio
async def test_malformed_deposit_data_rejected(broker, ledger):
    await create_agreement(broker)

    with pytest.raises(ValueError):
        await ledger.transfer_and_call(CONSUMER, BROKER, 4, {"nonce": 1})

    assert ledger.balances[CONSUMER] == 20


@pytest.mark.asyncio
async def test_deposit_beyond_balance_fails_at_ledger(broker, ledger):
    agreement_id = await create_agreement(broker)

    with pytest.raises(LedgerError):
        await deposit(broker, ledger, agreement_id, amount=100)

    assert broker.store.requests == {}


@pytest.mark.asyncio
async def test_callback_defaults_to_depositor(broker, ledger):
    agreement_id = await create_agreement(broker)

    request_id = await deposit(broker, ledger, agreement_id)
    other_id = await deposit(broker, ledger, agreement_id, nonce=2, callback_target="consumer-contract")

    assert broker.get_request(request_id).callback.target == CONSUMER
    assert broker.get_request(other_id).callback.target == "consumer-contract"
    assert broker.get_request(other_id).originating_caller == CONSUMER


@pytest.mark.asyncio
async def test_emission_failure_leaves_slot_pending(broker, ledger, channel):
    agreement_id = await create_agreement(broker)

    original_send = channel.send

    async def flaky_send(descriptor):
        if descriptor.provider_ref == PROVIDERS[1]:
            raise ConnectionError("provider unreachable")
        await original_send(descriptor)

    channel.send = flaky_send

    request_id = await deposit(broker, ledger, agreement_id)

    request = broker.get_request(request_id)
    assert request.state == RequestState.OPEN
    assert request.pending_slots() == 4
    assert len(broker.events.events_of(EventType.SUB_REQUEST_DISPATCHED)) == 3
