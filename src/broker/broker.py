"""
Quorum Broker - wiring of registry, escrow, dispatcher, aggregator and
cancellation around one shared BrokerStore

Entry points by actor:
- administrator: create/delete service agreements, withdraw residual funds
- ledger: on_token_transfer (deposit-with-data hook)
- provider: receive
- caller: cancel, get_request
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from .aggregator import Aggregator, ReceiveOutcome
from .agreement import ServiceAgreement
from .callbacks import CallbackRouter
from .cancellation import CancellationHandler
from .dispatcher import Dispatcher
from .errors import Unauthorized, WrongSender
from .escrow import EscrowAccountant
from .events import EventType
from .ledger import Ledger
from .providers import ProviderChannel, InMemoryProviderChannel
from .request import AggregationRequest, CallbackSelector
from .registry import AgreementRegistry
from .store import BrokerStore, BrokerConfig

logger = logging.getLogger("quorum.broker")


@dataclass
class DepositPayload:
    """Data attached to a deposit by the caller"""
    agreement_id: str
    nonce: int
    callback_target: Optional[str] = None
    callback_method: str = "fulfill"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DepositPayload":
        try:
            return cls(
                agreement_id=str(data["agreement_id"]),
                nonce=int(data["nonce"]),
                callback_target=data.get("callback_target"),
                callback_method=data.get("callback_method") or "fulfill",
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed deposit data: {e}") from e

    def selector_for(self, depositor: str) -> CallbackSelector:
        """Callback defaults to the depositor when no consumer is named"""
        return CallbackSelector(
            target=self.callback_target or depositor,
            method=self.callback_method,
        )


class QuorumBroker:
    """Quorum request-aggregation broker"""

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[BrokerConfig] = None,
        channel: Optional[ProviderChannel] = None,
        callbacks: Optional[CallbackRouter] = None,
        store: Optional[BrokerStore] = None
    ):
        self.store = store or BrokerStore(config)
        self.config = self.store.config
        self.ledger = ledger
        self.channel = channel or InMemoryProviderChannel()
        self.callbacks = callbacks or CallbackRouter()

        self.escrow = EscrowAccountant(self.store, ledger)
        self.registry = AgreementRegistry(self.store)
        self.dispatcher = Dispatcher(self.store, self.escrow, self.channel)
        self.aggregator = Aggregator(self.store, self.registry, self.escrow, self.callbacks)
        self.cancellation = CancellationHandler(self.store, self.registry, self.escrow)

        register_receiver = getattr(ledger, "register_receiver", None)
        if register_receiver is not None:
            register_receiver(self.config.broker_id, self.on_token_transfer)

        logger.info(f"QuorumBroker created: broker_id={self.config.broker_id}")

    @property
    def events(self):
        return self.store.events

    # -------------------------------------------------------------------------
    # Administrative surface
    # -------------------------------------------------------------------------

    async def create_service_agreement(
        self,
        initiator: str,
        min_responses: int,
        providers: List[str],
        job_specs: List[str],
        fees: List[int]
    ) -> str:
        return await self.registry.create(initiator, min_responses, providers, job_specs, fees)

    def get_service_agreement(self, agreement_id: str) -> ServiceAgreement:
        return self.registry.get(agreement_id)

    async def delete_service_agreement(self, initiator: str, agreement_id: str):
        await self.registry.delete(initiator, agreement_id)

    async def withdraw(self, initiator: str, to: Optional[str] = None) -> int:
        """
        Send the broker's residual balance to the administrator.

        Escrow still owed to in-flight requests is never withdrawn.

        Returns:
            Amount withdrawn
        """
        if initiator != self.config.admin_id:
            logger.warning(f"Withdraw rejected for non-admin {initiator}")
            raise Unauthorized(initiator, "withdraw")

        async with self.store.registry_lock:
            balance = await self.ledger.balance_of(self.config.broker_id)
            residual = max(0, balance - self.store.escrow_held())
            if residual > 0:
                await self.ledger.transfer(self.config.broker_id, to or initiator, residual)

        logger.info(f"Withdrawn {residual} to {to or initiator}")
        await self.events.publish(EventType.FUNDS_WITHDRAWN, amount=residual, to=to or initiator)
        return residual

    # -------------------------------------------------------------------------
    # Ledger hook
    # -------------------------------------------------------------------------

    async def on_token_transfer(
        self,
        sender: str,
        depositor: str,
        amount: int,
        data: Dict[str, Any]
    ) -> str:
        """
        Deposit-with-data hook invoked by the ledger after funds arrive.

        Raises:
            WrongSender: If sender is not the recognized ledger
        """
        if sender != self.config.ledger_id:
            logger.warning(f"Deposit rejected from unrecognized sender {sender}")
            raise WrongSender(sender)

        payload = DepositPayload.from_dict(data)
        return await self.dispatcher.submit(
            agreement_id=payload.agreement_id,
            deposit_amount=amount,
            caller=depositor,
            nonce=payload.nonce,
            callback=payload.selector_for(depositor),
        )

    # -------------------------------------------------------------------------
    # Provider and caller entry points
    # -------------------------------------------------------------------------

    async def receive(
        self,
        request_id: str,
        sub_request_id: str,
        value: Any,
        responder_ref: str
    ) -> ReceiveOutcome:
        return await self.aggregator.receive(request_id, sub_request_id, value, responder_ref)

    async def cancel(self, request_id: str, sub_request_id: str, initiator: str) -> AggregationRequest:
        return await self.cancellation.cancel(request_id, sub_request_id, initiator)

    def get_request(self, request_id: str) -> Optional[AggregationRequest]:
        return self.store.get_request(request_id)

    def get_status(self) -> Dict[str, Any]:
        return self.store.get_status_summary()
