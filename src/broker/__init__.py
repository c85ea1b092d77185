"""
Quorum Broker Module - M-of-N request aggregation with escrow

Components:
- AgreementRegistry: service agreements (fan-out configurations)
- EscrowAccountant: deposit validation, per-request escrow, refunds
- Dispatcher: one deposit → one AggregationRequest → N sub-requests
- Aggregator: response collection, median on quorum, single delivery
- CancellationHandler: time-based reclaim of unanswered sub-requests
"""

from .agreement import ServiceAgreement, ProviderSlot
from .aggregator import Aggregator, ReceiveOutcome
from .broker import QuorumBroker, DepositPayload
from .callbacks import CallbackRouter
from .cancellation import CancellationHandler
from .dispatcher import Dispatcher
from .errors import (
    BrokerError,
    InvalidQuorum,
    LengthMismatch,
    Unauthorized,
    AgreementActive,
    UnknownAgreement,
    ReplayedNonce,
    InsufficientPayment,
    EscrowExhausted,
    WrongSender,
    WrongOrigin,
    UnknownRequest,
    UnknownSubRequest,
    NotExpired,
    CallbackDeliveryError,
    InvalidResponseValue,
    MalformedMessage,
)
from .escrow import EscrowAccountant
from .events import EventBus, BrokerEvent, EventType
from .ledger import Ledger, InMemoryLedger, LedgerError
from .providers import (
    ProviderChannel,
    InMemoryProviderChannel,
    RedisProviderChannel,
    SubRequestDescriptor,
)
from .quorum import QuorumCalculator, QuorumStatus, MedianTieBreak, median, quorum_value
from .registry import AgreementRegistry
from .request import (
    AggregationRequest,
    SubRequest,
    CallbackSelector,
    RequestState,
    InvalidTransitionError,
    VALID_TRANSITIONS,
)
from .store import BrokerStore, BrokerConfig

__all__ = [
    # Facade
    "QuorumBroker",
    "DepositPayload",
    "BrokerStore",
    "BrokerConfig",
    # Components
    "AgreementRegistry",
    "EscrowAccountant",
    "Dispatcher",
    "Aggregator",
    "ReceiveOutcome",
    "CancellationHandler",
    # Data model
    "ServiceAgreement",
    "ProviderSlot",
    "AggregationRequest",
    "SubRequest",
    "CallbackSelector",
    "RequestState",
    "InvalidTransitionError",
    "VALID_TRANSITIONS",
    # Quorum
    "QuorumCalculator",
    "QuorumStatus",
    "MedianTieBreak",
    "median",
    "quorum_value",
    # Collaborators
    "Ledger",
    "InMemoryLedger",
    "LedgerError",
    "ProviderChannel",
    "InMemoryProviderChannel",
    "RedisProviderChannel",
    "SubRequestDescriptor",
    "CallbackRouter",
    # Events
    "EventBus",
    "BrokerEvent",
    "EventType",
    # Errors
    "BrokerError",
    "InvalidQuorum",
    "LengthMismatch",
    "Unauthorized",
    "AgreementActive",
    "UnknownAgreement",
    "ReplayedNonce",
    "InsufficientPayment",
    "EscrowExhausted",
    "WrongSender",
    "WrongOrigin",
    "UnknownRequest",
    "UnknownSubRequest",
    "NotExpired",
    "CallbackDeliveryError",
    "InvalidResponseValue",
    "MalformedMessage",
]
