# src/broker/quorum.py
"""
Quorum Calculator - M-of-N quorum tracking and the consensus statistic

A request with N provider slots finalizes once M responses have arrived.
The final value is the median of exactly those first M responses:
- odd M: the middle value after ascending sort
- even M: the lower middle value (default) or the mean of the two middles

For N=4, M=3 and responses [100, 101, 102]:
- median = 101, any 4th response is excluded from the statistic
"""

import logging
import statistics
from dataclasses import dataclass
from enum import Enum
from typing import List, Any, Sequence

logger = logging.getLogger("quorum.broker.quorum")


class QuorumStatus(str, Enum):
    """Status of quorum achievement"""
    NOT_STARTED = "not_started"    # No responses collected yet
    COLLECTING = "collecting"       # Responses being collected
    ACHIEVED = "achieved"           # Quorum reached
    FAILED = "failed"               # Cannot reach quorum (too many cancelled slots)


class MedianTieBreak(str, Enum):
    """How an even quorum picks its median"""
    LOWER = "lower"
    MEAN = "mean"


@dataclass
class QuorumCalculator:
    """
    Tracks M-of-N quorum requirements for one agreement.

    Invariant: 1 <= min_responses <= total_slots
    """

    total_slots: int
    min_responses: int

    def __post_init__(self):
        if self.min_responses <= 0 or self.min_responses > self.total_slots:
            raise ValueError(
                f"Quorum requires 1 <= M <= N, got M={self.min_responses}, N={self.total_slots}"
            )

    @property
    def quorum_size(self) -> int:
        return self.min_responses

    def has_quorum(self, responses: int) -> bool:
        """Check if we have enough responses for quorum"""
        return responses >= self.min_responses

    def responses_needed(self, current_responses: int) -> int:
        return max(0, self.min_responses - current_responses)

    def can_reach_quorum(self, current_responses: int, pending_slots: int) -> bool:
        """
        Check if quorum can still be reached.

        Args:
            current_responses: Responses already collected
            pending_slots: Slots neither fulfilled nor cancelled
        """
        return current_responses + pending_slots >= self.min_responses

    def get_status(self, current_responses: int, pending_slots: int) -> QuorumStatus:
        if self.has_quorum(current_responses):
            return QuorumStatus.ACHIEVED

        if not self.can_reach_quorum(current_responses, pending_slots):
            return QuorumStatus.FAILED

        if current_responses == 0:
            return QuorumStatus.NOT_STARTED

        return QuorumStatus.COLLECTING


def median(values: Sequence[Any], tie_break: MedianTieBreak = MedianTieBreak.LOWER) -> Any:
    """Median of a non-empty sequence with a configurable even-length rule"""
    if not values:
        raise ValueError("median of empty sequence")

    if tie_break == MedianTieBreak.MEAN:
        return statistics.median(values)
    return statistics.median_low(values)


def quorum_value(
    responses: List[Any],
    min_responses: int,
    tie_break: MedianTieBreak = MedianTieBreak.LOWER
) -> Any:
    """Median of the first min_responses responses in arrival order"""
    return median(responses[:min_responses], tie_break)
