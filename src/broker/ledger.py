"""
Ledger - the token ledger collaborator the broker holds escrow on

The broker only needs transfer and balance_of; deposits arrive through
transfer_and_call, which moves funds and then invokes the recipient's
deposit hook. A hook failure reverts the transfer.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Callable, Optional

logger = logging.getLogger("quorum.broker.ledger")


class LedgerError(Exception):
    """Raised when the ledger refuses a transfer"""


class Ledger(ABC):
    """Ledger collaborator contract"""

    identity: str

    @abstractmethod
    async def transfer(self, sender: str, to: str, amount: int) -> None:
        ...

    @abstractmethod
    async def balance_of(self, owner: str) -> int:
        ...

    @abstractmethod
    async def transfer_and_call(
        self,
        sender: str,
        to: str,
        amount: int,
        data: Dict[str, Any]
    ) -> Any:
        ...


class InMemoryLedger(Ledger):
    """Balance table with deposit-with-data hooks, for tests and local runs"""

    def __init__(self, identity: str = "ledger", balances: Optional[Dict[str, int]] = None):
        self.identity = identity
        self.balances: Dict[str, int] = dict(balances or {})
        self._receivers: Dict[str, Callable] = {}
        self._lock = asyncio.Lock()

    def register_receiver(self, address: str, hook: Callable):
        """Hook called as hook(ledger_identity, sender, amount, data)"""
        self._receivers[address] = hook

    def mint(self, owner: str, amount: int):
        self.balances[owner] = self.balances.get(owner, 0) + amount

    def burn(self, owner: str, amount: int):
        available = self.balances.get(owner, 0)
        if available < amount:
            raise LedgerError(f"Cannot burn {amount} from {owner}: balance {available}")
        self.balances[owner] = available - amount

    async def balance_of(self, owner: str) -> int:
        return self.balances.get(owner, 0)

    async def transfer(self, sender: str, to: str, amount: int) -> None:
        async with self._lock:
            self._move(sender, to, amount)
        logger.debug(f"Transfer {amount}: {sender} → {to}")

    async def transfer_and_call(
        self,
        sender: str,
        to: str,
        amount: int,
        data: Dict[str, Any]
    ) -> Any:
        async with self._lock:
            self._move(sender, to, amount)

        hook = self._receivers.get(to)
        if hook is None:
            return None

        try:
            if asyncio.iscoroutinefunction(hook):
                return await hook(self.identity, sender, amount, data)
            return hook(self.identity, sender, amount, data)
        except Exception:
            # Revert the deposit so a rejected hook leaves balances untouched
            async with self._lock:
                self._move(to, sender, amount)
            raise

    def _move(self, sender: str, to: str, amount: int):
        if amount < 0:
            raise LedgerError(f"Negative transfer amount: {amount}")
        available = self.balances.get(sender, 0)
        if available < amount:
            raise LedgerError(f"Insufficient balance for {sender}: {available} < {amount}")
        self.balances[sender] = available - amount
        self.balances[to] = self.balances.get(to, 0) + amount
