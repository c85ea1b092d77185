# tests/test_cancellation.py
"""
Tests for time-based cancellation of unanswered sub-requests
"""

import pytest

from src.broker import (
    AggregationRequest,
    CallbackSelector,
    EventType,
    InvalidTransitionError,
    LedgerError,
    NotExpired,
    RequestState,
    Unauthorized,
    UnknownRequest,
    UnknownSubRequest,
    WrongOrigin,
)

from conftest import BROKER, CONSUMER, STRANGER, create_agreement, deposit


async def open_request(broker, ledger):
    agreement_id = await create_agreement(broker)
    request_id = await deposit(broker, ledger, agreement_id)
    return agreement_id, broker.get_request(request_id)


@pytest.mark.asyncio
async def test_cancel_before_window_rejected(broker, ledger, clock):
    _, request = await open_request(broker, ledger)
    clock.advance(60)

    with pytest.raises(NotExpired) as exc:
        await broker.cancel(request.request_id, request.sub_requests[0].sub_request_id, CONSUMER)

    assert exc.value.message == "Request is not expired"
    assert request.escrow_remaining == 4


@pytest.mark.asyncio
async def test_cancel_after_window_refunds_fee(broker, ledger, clock):
    _, request = await open_request(broker, ledger)
    clock.advance(300)

    await broker.cancel(request.request_id, request.sub_requests[0].sub_request_id, CONSUMER)

    assert request.sub_requests[0].cancelled
    assert request.state == RequestState.OPEN
    assert request.escrow_remaining == 3
    assert ledger.balances[CONSUMER] == 17
    assert len(broker.events.events_of(EventType.SUB_REQUEST_CANCELLED)) == 1


@pytest.mark.asyncio
async def test_cancel_rejects_other_callers(broker, ledger, clock):
    _, request = await open_request(broker, ledger)
    clock.advance(301)

    with pytest.raises(Unauthorized):
        await broker.cancel(request.request_id, request.sub_requests[0].sub_request_id, STRANGER)

    assert request.sub_requests[0].is_pending


@pytest.mark.asyncio
async def test_cancel_unknown_ids(broker, ledger):
    _, request = await open_request(broker, ledger)

    with pytest.raises(UnknownRequest):
        await broker.cancel("0xmissing", "0xsub", CONSUMER)
    with pytest.raises(UnknownSubRequest):
        await broker.cancel(request.request_id, "0xmissing", CONSUMER)


@pytest.mark.asyncio
async def test_cancelled_slot_rejects_late_response(broker, ledger, clock):
    _, request = await open_request(broker, ledger)
    sub = request.sub_requests[0]
    clock.advance(300)
    await broker.cancel(request.request_id, sub.sub_request_id, CONSUMER)

    with pytest.raises(WrongOrigin):
        await broker.receive(request.request_id, sub.sub_request_id, 100, sub.provider_ref)


@pytest.mark.asyncio
async def test_fulfilled_slot_cannot_be_cancelled(broker, ledger, clock):
    _, request = await open_request(broker, ledger)
    sub = request.sub_requests[0]
    await broker.receive(request.request_id, sub.sub_request_id, 100, sub.provider_ref)
    clock.advance(300)

    with pytest.raises(NotExpired) as exc:
        await broker.cancel(request.request_id, sub.sub_request_id, CONSUMER)

    assert exc.value.message == "Sub-request already resolved"


@pytest.mark.asyncio
async def test_unreachable_quorum_cancels_request(broker, ledger, clock):
    agreement_id, request = await open_request(broker, ledger)
    clock.advance(300)

    await broker.cancel(request.request_id, request.sub_requests[0].sub_request_id, CONSUMER)
    assert request.state == RequestState.OPEN

    await broker.cancel(request.request_id, request.sub_requests[1].sub_request_id, CONSUMER)

    assert request.state == RequestState.CANCELLED
    assert request.escrow_remaining == 0
    assert all(sub.cancelled for sub in request.sub_requests)
    assert ledger.balances[CONSUMER] == 20
    assert ledger.balances[BROKER] == 0
    assert broker.get_service_agreement(agreement_id).active_requests == 0
    assert len(broker.events.events_of(EventType.REQUEST_CANCELLED)) == 1

    # Agreement can be deleted once nothing is in flight
    await broker.delete_service_agreement("admin", agreement_id)


@pytest.mark.asyncio
async def test_failed_request_refund_leaves_request_open(broker, ledger, clock):
    _, request = await open_request(broker, ledger)
    clock.advance(300)
    await broker.cancel(request.request_id, request.sub_requests[0].sub_request_id, CONSUMER)
    ledger.burn(BROKER, 3)

    with pytest.raises(LedgerError):
        await broker.cancel(request.request_id, request.sub_requests[1].sub_request_id, CONSUMER)

    assert request.state == RequestState.OPEN
    assert request.escrow_remaining == 3
    assert [sub.is_pending for sub in request.sub_requests] == [False, True, True, True]
    assert broker.events.events_of(EventType.REQUEST_CANCELLED) == []

    ledger.mint(BROKER, 3)
    await broker.cancel(request.request_id, request.sub_requests[1].sub_request_id, CONSUMER)

    assert request.state == RequestState.CANCELLED
    assert request.escrow_remaining == 0
    assert ledger.balances[CONSUMER] == 20
    refund = broker.events.events_of(EventType.REQUEST_CANCELLED)[0].payload["refund"]
    assert refund == 3


@pytest.mark.asyncio
async def test_cancel_after_finalization_reclaims_leftover(broker, ledger, clock, consumer):
    _, request = await open_request(broker, ledger)
    for index, value in enumerate([100, 101, 102]):
        sub = request.sub_requests[index]
        await broker.receive(request.request_id, sub.sub_request_id, value, sub.provider_ref)
    await broker.aggregator.drain()
    clock.advance(300)

    await broker.cancel(request.request_id, request.sub_requests[3].sub_request_id, CONSUMER)

    assert request.state == RequestState.FINALIZED
    assert request.final_value == 101
    assert request.escrow_remaining == 0
    assert ledger.balances[CONSUMER] == 17
    assert len(consumer.deliveries) == 1


def test_terminal_state_cannot_transition():
    request = AggregationRequest(
        request_id="0x1",
        agreement_id="0xa",
        min_responses=1,
        originating_caller=CONSUMER,
        callback=CallbackSelector(target=CONSUMER),
        nonce=1,
        escrow_remaining=0,
    )
    request.transition_to(RequestState.CANCELLED)

    with pytest.raises(InvalidTransitionError):
        request.transition_to(RequestState.FINALIZED)
