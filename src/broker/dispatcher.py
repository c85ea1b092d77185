"""
Dispatcher - turns one validated deposit into N provider sub-requests

The replay check, escrow validation, request creation and the active-request
increment happen together under the registry lock, so two submissions with
the same (caller, nonce) can never both succeed and a rejected submission
leaves no trace. Emission to providers happens after the state is committed.
"""

import logging

from .agreement import ServiceAgreement
from .errors import UnknownAgreement, ReplayedNonce
from .escrow import EscrowAccountant
from .events import EventType
from .providers import ProviderChannel, SubRequestDescriptor
from .request import (
    AggregationRequest,
    CallbackSelector,
    SubRequest,
    derive_request_id,
    derive_sub_request_id,
)
from .store import BrokerStore

logger = logging.getLogger("quorum.broker.dispatcher")


class Dispatcher:
    """Creates aggregation requests and fans them out"""

    def __init__(self, store: BrokerStore, escrow: EscrowAccountant, channel: ProviderChannel):
        self.store = store
        self.escrow = escrow
        self.channel = channel

    def _build_request(
        self,
        agreement: ServiceAgreement,
        caller: str,
        nonce: int,
        callback: CallbackSelector
    ) -> AggregationRequest:
        request_id = derive_request_id(caller, nonce)
        now = self.store.now()
        sub_requests = [
            SubRequest(
                sub_request_id=derive_sub_request_id(request_id, index),
                index=index,
                provider_ref=slot.provider_ref,
                job_spec=slot.job_spec,
                fee=slot.fee,
                created_at=now,
            )
            for index, slot in enumerate(agreement.slots)
        ]
        return AggregationRequest(
            request_id=request_id,
            agreement_id=agreement.agreement_id,
            min_responses=agreement.min_responses,
            originating_caller=caller,
            callback=callback,
            nonce=nonce,
            escrow_remaining=agreement.total_fee,
            sub_requests=sub_requests,
            created_at=now,
        )

    async def submit(
        self,
        agreement_id: str,
        deposit_amount: int,
        caller: str,
        nonce: int,
        callback: CallbackSelector
    ) -> str:
        """
        Create an aggregation request from a deposit and emit its sub-requests.

        Returns:
            The request id, derived from (caller, nonce)

        Raises:
            UnknownAgreement: If agreement_id does not resolve
            ReplayedNonce: If (caller, nonce) was already consumed
            InsufficientPayment: If deposit_amount < the agreement's total fee
        """
        async with self.store.registry_lock:
            agreement = self.store.get_agreement(agreement_id)
            if agreement is None:
                raise UnknownAgreement(agreement_id)

            replay_key = (caller, nonce)
            if replay_key in self.store.consumed_nonces:
                logger.warning(f"Replay rejected: caller={caller} nonce={nonce}")
                raise ReplayedNonce(caller, nonce)

            excess = self.escrow.accept(deposit_amount, agreement.total_fee)

            request = self._build_request(agreement, caller, nonce, callback)
            self.store.consumed_nonces.add(replay_key)
            self.store.requests[request.request_id] = request
            self.store.request_lock(request.request_id)
            agreement.active_requests += 1

        logger.info(
            f"Aggregation request opened: id={request.request_id} agreement={agreement_id} "
            f"caller={caller} escrow={request.escrow_remaining} excess={excess}"
        )

        await self.escrow.refund_excess(caller, excess)
        await self.store.events.publish(
            EventType.AGGREGATION_REQUESTED,
            request_id=request.request_id,
            agreement_id=agreement_id,
            caller=caller,
            nonce=nonce,
            escrow=request.escrow_remaining,
            refund=excess,
        )

        for sub in request.sub_requests:
            await self._emit(request, sub)

        return request.request_id

    async def _emit(self, request: AggregationRequest, sub: SubRequest):
        descriptor = SubRequestDescriptor(
            agreement_id=request.agreement_id,
            request_id=request.request_id,
            sub_request_id=sub.sub_request_id,
            provider_ref=sub.provider_ref,
            job_spec=sub.job_spec,
            fee=sub.fee,
            callback_address=self.store.config.broker_id,
        )
        try:
            await self.channel.send(descriptor)
        except Exception as e:
            # Slot stays pending; the caller reclaims it through cancellation
            logger.error(
                f"Failed to emit sub-request {sub.sub_request_id} "
                f"to {sub.provider_ref}: {e}"
            )
            return

        await self.store.events.publish(
            EventType.SUB_REQUEST_DISPATCHED,
            request_id=request.request_id,
            sub_request_id=sub.sub_request_id,
            provider_ref=sub.provider_ref,
            index=sub.index,
        )
