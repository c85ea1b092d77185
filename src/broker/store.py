"""
Broker Store - the single shared state object injected into every component

Holds the agreement registry, aggregation requests and the consumed replay
keys. The registry lock guards agreements, active-request counters and replay
keys; each request additionally gets its own lock so that quorum detection
and finalization happen at a single mutation point.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, Set, Tuple, Callable

from .agreement import ServiceAgreement
from .events import EventBus
from .quorum import MedianTieBreak
from .request import AggregationRequest

logger = logging.getLogger("quorum.broker.store")

Clock = Callable[[], datetime]


@dataclass
class BrokerConfig:
    """Tunables for the broker core"""
    admin_id: str = "admin"
    ledger_id: str = "ledger"
    broker_id: str = "broker"
    expiration_window: float = 300.0          # Seconds before a sub-request may be cancelled
    median_tie_break: MedianTieBreak = MedianTieBreak.LOWER
    event_history_size: int = 1000           # Recent events kept in memory by the EventBus


class BrokerStore:
    """Process-wide broker state with an explicit lifecycle"""

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None
    ):
        self.config = config or BrokerConfig()
        self.clock: Clock = clock or datetime.utcnow
        self.events = events or EventBus(history_size=self.config.event_history_size)

        self.agreements: Dict[str, ServiceAgreement] = {}
        self.requests: Dict[str, AggregationRequest] = {}
        self.consumed_nonces: Set[Tuple[str, int]] = set()
        self.agreement_nonce: int = 0

        self.registry_lock = asyncio.Lock()
        self._request_locks: Dict[str, asyncio.Lock] = {}

        logger.info(
            f"BrokerStore created: admin={self.config.admin_id}, "
            f"ledger={self.config.ledger_id}, expiration={self.config.expiration_window}s"
        )

    def now(self) -> datetime:
        return self.clock()

    def request_lock(self, request_id: str) -> asyncio.Lock:
        """Per-request lock, created alongside the request"""
        lock = self._request_locks.get(request_id)
        if lock is None:
            lock = asyncio.Lock()
            self._request_locks[request_id] = lock
        return lock

    def get_agreement(self, agreement_id: str) -> Optional[ServiceAgreement]:
        return self.agreements.get(agreement_id)

    def get_request(self, request_id: str) -> Optional[AggregationRequest]:
        return self.requests.get(request_id)

    def escrow_held(self) -> int:
        """Total escrow still owed to in-flight requests"""
        return sum(r.escrow_remaining for r in self.requests.values())

    def get_status_summary(self) -> Dict[str, Any]:
        state_counts: Dict[str, int] = {}
        for request in self.requests.values():
            state_counts[request.state.value] = state_counts.get(request.state.value, 0) + 1

        return {
            "agreements": len(self.agreements),
            "requests": len(self.requests),
            "request_states": state_counts,
            "escrow_held": self.escrow_held(),
            "timestamp": self.now().isoformat(),
        }
