"""
Cancellation Handler - reclaim escrow for sub-requests that never answered

Cancelling one slot leaves the request open. When the remaining pending
slots can no longer make up the quorum, the whole request moves to CANCELLED
and every remaining slot's escrow goes back to the caller.
"""

import logging
from datetime import timedelta

from .errors import NotExpired, Unauthorized, UnknownRequest, UnknownSubRequest
from .escrow import EscrowAccountant
from .events import EventType
from .quorum import QuorumCalculator
from .registry import AgreementRegistry
from .request import AggregationRequest, RequestState, SubRequest
from .store import BrokerStore

logger = logging.getLogger("quorum.broker.cancellation")


class CancellationHandler:
    """Caller-initiated, time-based cancellation of sub-requests"""

    def __init__(self, store: BrokerStore, registry: AgreementRegistry, escrow: EscrowAccountant):
        self.store = store
        self.registry = registry
        self.escrow = escrow

    @property
    def expiration_window(self) -> timedelta:
        return timedelta(seconds=self.store.config.expiration_window)

    def expires_at(self, sub: SubRequest):
        return sub.created_at + self.expiration_window

    async def cancel(self, request_id: str, sub_request_id: str, initiator: str) -> AggregationRequest:
        """
        Cancel one expired, unanswered sub-request and refund its fee.

        Raises:
            UnknownRequest / UnknownSubRequest: If either id does not resolve
            Unauthorized: If initiator is not the originating caller
            NotExpired: If the window has not elapsed or the slot is resolved
        """
        request = self.store.get_request(request_id)
        if request is None:
            raise UnknownRequest(request_id)

        async with self.store.request_lock(request_id):
            sub = request.get_sub_request(sub_request_id)
            if sub is None:
                raise UnknownSubRequest(request_id, sub_request_id)
            if initiator != request.originating_caller:
                logger.warning(f"Cancel of {sub_request_id} rejected: {initiator} is not the requester")
                raise Unauthorized(initiator, "cancel sub-request")
            if not sub.is_pending:
                raise NotExpired(sub_request_id, "Sub-request already resolved")
            if self.store.now() < self.expires_at(sub):
                raise NotExpired(sub_request_id)

            request_cancelled = request.is_open and self._quorum_unreachable_without(request, sub)
            if request_cancelled:
                slots = [s for s in request.sub_requests if s.is_pending]
            else:
                slots = [sub]

            # Single transfer: either every slot below is refunded or none is
            refund = sum(s.fee for s in slots)
            await self.escrow.release(
                request,
                refund,
                request.originating_caller,
                reason="quorum unreachable" if request_cancelled else "sub-request cancelled",
            )
            for s in slots:
                s.cancelled = True
            logger.info(f"Sub-request cancelled: {sub_request_id} of {request_id}")

            if request_cancelled:
                request.transition_to(RequestState.CANCELLED, "quorum unreachable")
                await self.registry.release_active(request.agreement_id)

        await self.store.events.publish(
            EventType.SUB_REQUEST_CANCELLED,
            request_id=request_id,
            sub_request_id=sub_request_id,
            refund=sub.fee,
        )
        if request_cancelled:
            await self.store.events.publish(
                EventType.REQUEST_CANCELLED,
                request_id=request_id,
                agreement_id=request.agreement_id,
                responses=len(request.responses_received),
                refund=refund,
            )
        return request

    @staticmethod
    def _quorum_unreachable_without(request: AggregationRequest, sub: SubRequest) -> bool:
        """True if cancelling sub leaves too few pending slots to reach quorum"""
        quorum = QuorumCalculator(
            total_slots=len(request.sub_requests),
            min_responses=request.min_responses,
        )
        remaining = request.pending_slots() - (1 if sub.is_pending else 0)
        return not quorum.can_reach_quorum(len(request.responses_received), remaining)
