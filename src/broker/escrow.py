"""
Escrow Accountant - deposit validation, per-request balance and releases
"""

import logging
from typing import Optional

from .errors import InsufficientPayment, EscrowExhausted
from .ledger import Ledger
from .request import AggregationRequest
from .store import BrokerStore

logger = logging.getLogger("quorum.broker.escrow")


class EscrowAccountant:
    """
    Owns the arithmetic of escrow.

    - accept: validates a deposit against the expected total, returns the excess
    - release: pays part of a request's escrow out, never below zero
    """

    def __init__(self, store: BrokerStore, ledger: Ledger):
        self.store = store
        self.ledger = ledger

    @staticmethod
    def accept(deposit_amount: int, expected_total: int) -> int:
        """
        Validate a deposit.

        Returns:
            The non-negative excess to refund to the depositor

        Raises:
            InsufficientPayment: If deposit_amount < expected_total
        """
        if deposit_amount < expected_total:
            raise InsufficientPayment(deposit_amount, expected_total)
        return deposit_amount - expected_total

    def reserve(self, request: AggregationRequest, amount: int):
        """Debit escrow without moving funds; raises before any mutation"""
        if amount < 0 or amount > request.escrow_remaining:
            raise EscrowExhausted(request.request_id, request.escrow_remaining, amount)
        request.escrow_remaining -= amount

    async def release(
        self,
        request: AggregationRequest,
        amount: int,
        to: str,
        reason: Optional[str] = None
    ):
        """
        Transfer part of a request's escrow to a party.

        Raises:
            EscrowExhausted: If the request's escrow cannot cover amount
        """
        self.reserve(request, amount)
        try:
            await self.ledger.transfer(self.store.config.broker_id, to, amount)
        except Exception:
            request.escrow_remaining += amount
            raise

        logger.info(
            f"Escrow released: request={request.request_id} amount={amount} to={to} "
            f"remaining={request.escrow_remaining}" + (f" ({reason})" if reason else "")
        )

    async def refund_excess(self, depositor: str, excess: int):
        """Return overpayment immediately; excess is never part of any request's escrow"""
        if excess <= 0:
            return
        await self.ledger.transfer(self.store.config.broker_id, depositor, excess)
        logger.info(f"Excess payment refunded: {excess} to {depositor}")
