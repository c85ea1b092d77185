"""
Aggregator - response-collection state machine

Every response for a request is handled under that request's lock, which is
the single mutation point for quorum detection. The M-th response computes
the median of the first M values and moves the request to FINALIZED; the
value is then delivered once from a background task, so the responding
provider never waits on the consumer. Responses arriving after finalization
still pay the provider but never touch the final value or the callback.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Optional, Any, Dict, List, Callable, Set

from .callbacks import CallbackRouter
from .errors import (
    CallbackDeliveryError,
    InvalidResponseValue,
    UnknownRequest,
    UnknownSubRequest,
    WrongOrigin,
)
from .escrow import EscrowAccountant
from .events import EventType
from .quorum import quorum_value
from .registry import AgreementRegistry
from .request import AggregationRequest, RequestState
from .store import BrokerStore

logger = logging.getLogger("quorum.broker.aggregator")


@dataclass
class ReceiveOutcome:
    """Result of one accepted response"""
    request_id: str
    sub_request_id: str
    counted: bool                   # Appended to responses_received
    finalized: bool                 # This response completed the quorum
    state: RequestState
    final_value: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "sub_request_id": self.sub_request_id,
            "counted": self.counted,
            "finalized": self.finalized,
            "state": self.state.value,
            "final_value": self.final_value,
        }


class Aggregator:
    """Collects sub-responses and finalizes on quorum"""

    def __init__(
        self,
        store: BrokerStore,
        registry: AgreementRegistry,
        escrow: EscrowAccountant,
        callbacks: CallbackRouter
    ):
        self.store = store
        self.registry = registry
        self.escrow = escrow
        self.callbacks = callbacks
        self._delivery_failure_callbacks: List[Callable] = []
        self._delivery_tasks: Set[asyncio.Task] = set()

    def on_delivery_failure(self, callback: Callable):
        """Register the consumer-facing error channel for failed deliveries"""
        self._delivery_failure_callbacks.append(callback)

    async def receive(
        self,
        request_id: str,
        sub_request_id: str,
        value: Any,
        responder_ref: str
    ) -> ReceiveOutcome:
        """
        Record one provider response.

        Raises:
            UnknownRequest: If request_id does not resolve
            UnknownSubRequest: If sub_request_id is not part of the request
            WrongOrigin: If responder_ref is not the slot's provider, or the
                slot was already fulfilled or cancelled
            InvalidResponseValue: If value is not a finite int or float
        """
        if not is_valid_response(value):
            raise InvalidResponseValue(sub_request_id, value)

        request = self.store.get_request(request_id)
        if request is None:
            raise UnknownRequest(request_id)

        async with self.store.request_lock(request_id):
            sub = request.get_sub_request(sub_request_id)
            if sub is None:
                raise UnknownSubRequest(request_id, sub_request_id)
            if responder_ref != sub.provider_ref or not sub.is_pending:
                logger.warning(
                    f"Response rejected for {sub_request_id}: responder={responder_ref} "
                    f"provider={sub.provider_ref} fulfilled={sub.fulfilled} cancelled={sub.cancelled}"
                )
                raise WrongOrigin(sub_request_id, responder_ref)

            await self.escrow.release(request, sub.fee, sub.provider_ref, reason="fee consumed")
            sub.fulfilled = True
            sub.response = value
            sub.responded_at = self.store.now()

            counted = False
            finalized = False
            if request.is_open:
                request.responses_received.append(value)
                counted = True
                if len(request.responses_received) == request.min_responses:
                    request.final_value = quorum_value(
                        request.responses_received,
                        request.min_responses,
                        self.store.config.median_tie_break,
                    )
                    request.transition_to(RequestState.FINALIZED, "quorum reached")
                    await self.registry.release_active(request.agreement_id)
                    finalized = True
            else:
                logger.info(
                    f"Late response for {request_id} ({request.state.value}) "
                    f"from {responder_ref} recorded without effect"
                )

            outcome = ReceiveOutcome(
                request_id=request_id,
                sub_request_id=sub_request_id,
                counted=counted,
                finalized=finalized,
                state=request.state,
                final_value=request.final_value,
            )

        await self.store.events.publish(
            EventType.RESPONSE_RECORDED,
            request_id=request_id,
            sub_request_id=sub_request_id,
            provider_ref=responder_ref,
            counted=counted,
        )

        if finalized:
            await self.store.events.publish(
                EventType.REQUEST_FINALIZED,
                request_id=request_id,
                agreement_id=request.agreement_id,
                final_value=request.final_value,
                responses=list(request.responses_received),
            )
            self._schedule_delivery(request)

        return outcome

    def _schedule_delivery(self, request: AggregationRequest):
        task = asyncio.create_task(self._deliver(request))
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task):
        self._delivery_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Callback delivery task failed: {error!r}")

    @property
    def pending_deliveries(self) -> int:
        return len(self._delivery_tasks)

    async def drain(self):
        """Wait for every in-flight callback delivery to finish"""
        while self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)

    async def shutdown(self):
        """Cancel deliveries still in flight"""
        tasks = list(self._delivery_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning(f"Cancelled {len(tasks)} pending callback deliveries")

    async def _deliver(self, request: AggregationRequest):
        """Single delivery attempt; failures go to the error channel, never retried"""
        try:
            await self.callbacks.deliver(request.callback, request.request_id, request.final_value)
        except CallbackDeliveryError as e:
            request.delivery_error = e.message
            logger.error(f"Callback delivery failed for {request.request_id}: {e.message}")
            await self.store.events.publish(
                EventType.CALLBACK_FAILED,
                request_id=request.request_id,
                target=request.callback.target,
                error=e.message,
            )
            for callback in self._delivery_failure_callbacks:
                try:
                    if asyncio.iscoroutinefunction(callback):
                        await callback(request, e)
                    else:
                        callback(request, e)
                except Exception as listener_error:
                    logger.error(f"Delivery failure callback error: {listener_error}")


def is_valid_response(value: Any) -> bool:
    """Only finite real numbers can take part in the median"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)
