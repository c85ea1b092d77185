"""
Aggregation Request - per-request state and sub-request slots
Open → Finalized | Cancelled, no transition out of a terminal state
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Set

logger = logging.getLogger("quorum.broker.request")


class RequestState(str, Enum):
    """Aggregation request states"""
    OPEN = "open"                # Collecting responses (0 <= responses < M)
    FINALIZED = "finalized"      # Quorum reached, value delivered
    CANCELLED = "cancelled"      # Quorum unreachable, escrow reclaimed


VALID_TRANSITIONS: Dict[RequestState, Set[RequestState]] = {
    RequestState.OPEN: {RequestState.FINALIZED, RequestState.CANCELLED},
    RequestState.FINALIZED: set(),
    RequestState.CANCELLED: set(),
}


class InvalidTransitionError(Exception):
    """Raised when a request is moved out of a terminal state"""
    def __init__(self, request_id: str, from_state: RequestState, to_state: RequestState):
        self.request_id = request_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for {request_id}: {from_state.value} → {to_state.value}"
        )


@dataclass(frozen=True)
class CallbackSelector:
    """Where and how the final value is delivered to the consumer"""
    target: str
    method: str = "fulfill"

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "method": self.method}


@dataclass
class SubRequest:
    """One provider slot of an aggregation request"""
    sub_request_id: str
    index: int
    provider_ref: str
    job_spec: str
    fee: int
    created_at: datetime
    fulfilled: bool = False
    cancelled: bool = False
    response: Optional[Any] = None
    responded_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        """Neither fulfilled nor cancelled"""
        return not self.fulfilled and not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub_request_id": self.sub_request_id,
            "index": self.index,
            "provider_ref": self.provider_ref,
            "job_spec": self.job_spec,
            "fee": self.fee,
            "created_at": self.created_at.isoformat(),
            "fulfilled": self.fulfilled,
            "cancelled": self.cancelled,
            "response": self.response,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }


@dataclass
class AggregationRequest:
    """One logical request fanned out to every slot of an agreement"""
    request_id: str
    agreement_id: str
    min_responses: int
    originating_caller: str
    callback: CallbackSelector
    nonce: int
    escrow_remaining: int
    sub_requests: List[SubRequest] = field(default_factory=list)
    responses_received: List[Any] = field(default_factory=list)
    state: RequestState = RequestState.OPEN
    final_value: Optional[Any] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    delivery_error: Optional[str] = None

    def can_transition_to(self, new_state: RequestState) -> bool:
        return new_state in VALID_TRANSITIONS.get(self.state, set())

    def transition_to(self, new_state: RequestState, reason: Optional[str] = None):
        """
        Move to a terminal state.

        Raises:
            InvalidTransitionError: If the request is already terminal
        """
        if not self.can_transition_to(new_state):
            raise InvalidTransitionError(self.request_id, self.state, new_state)

        previous = self.state
        self.state = new_state
        self.completed_at = datetime.utcnow()
        logger.info(f"Request {self.request_id}: {previous.value} → {new_state.value}"
                    + (f" ({reason})" if reason else ""))

    @property
    def is_open(self) -> bool:
        return self.state == RequestState.OPEN

    def get_sub_request(self, sub_request_id: str) -> Optional[SubRequest]:
        for sub in self.sub_requests:
            if sub.sub_request_id == sub_request_id:
                return sub
        return None

    def pending_slots(self) -> int:
        """Slots that could still deliver a response"""
        return len([s for s in self.sub_requests if s.is_pending])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "agreement_id": self.agreement_id,
            "min_responses": self.min_responses,
            "originating_caller": self.originating_caller,
            "callback": self.callback.to_dict(),
            "nonce": self.nonce,
            "escrow_remaining": self.escrow_remaining,
            "state": self.state.value,
            "final_value": self.final_value,
            "responses_received": list(self.responses_received),
            "sub_requests": [s.to_dict() for s in self.sub_requests],
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "delivery_error": self.delivery_error,
        }


def derive_request_id(caller: str, nonce: int) -> str:
    """Request id doubles as the (caller, nonce) replay key"""
    digest = hashlib.sha256(f"{caller}:{nonce}".encode("utf-8")).hexdigest()
    return "0x" + digest


def derive_sub_request_id(request_id: str, index: int) -> str:
    digest = hashlib.sha256(f"{request_id}/{index}".encode("utf-8")).hexdigest()
    return "0x" + digest
