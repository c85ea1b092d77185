"""
Service Agreement - stored fan-out configuration

A service agreement names N provider slots (provider, job spec, fee) and the
minimum quorum M. Deleted or unknown agreements read back as an empty record
rather than raising, so callers that poll state see a zeroed agreement.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional


@dataclass(frozen=True)
class ProviderSlot:
    """One (provider, job spec, fee) entry of an agreement"""
    provider_ref: str
    job_spec: str
    fee: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_ref": self.provider_ref,
            "job_spec": self.job_spec,
            "fee": self.fee,
        }


@dataclass
class ServiceAgreement:
    """Fan-out configuration for aggregation requests"""
    agreement_id: str = ""
    min_responses: int = 0
    slots: List[ProviderSlot] = field(default_factory=list)
    active_requests: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def empty(cls, agreement_id: str = "") -> "ServiceAgreement":
        """Zero-valued record returned for unknown or deleted agreements"""
        return cls(agreement_id=agreement_id)

    @property
    def total_fee(self) -> int:
        """Sum of per-provider fees, always derived from the slots"""
        return sum(slot.fee for slot in self.slots)

    @property
    def providers(self) -> List[str]:
        return [slot.provider_ref for slot in self.slots]

    @property
    def job_specs(self) -> List[str]:
        return [slot.job_spec for slot in self.slots]

    @property
    def fees(self) -> List[int]:
        return [slot.fee for slot in self.slots]

    def is_empty(self) -> bool:
        return not self.slots and self.min_responses == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agreement_id": self.agreement_id,
            "min_responses": self.min_responses,
            "providers": self.providers,
            "job_specs": self.job_specs,
            "fees": self.fees,
            "total_fee": self.total_fee,
            "active_requests": self.active_requests,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def derive_agreement_id(
    min_responses: int,
    slots: List[ProviderSlot],
    creation_nonce: int
) -> str:
    """Content hash of the agreement plus the registry's creation nonce"""
    payload = json.dumps(
        {
            "min_responses": min_responses,
            "slots": [slot.to_dict() for slot in slots],
            "nonce": creation_nonce,
        },
        sort_keys=True,
    )
    return "0x" + hashlib.sha256(payload.encode("utf-8")).hexdigest()
