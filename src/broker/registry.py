"""
Agreement Registry - create, read and delete service agreements

Writes are restricted to the administrator and serialized by the store's
registry lock, the same lock that guards active-request counters.
"""

import logging
from typing import List

from .agreement import ServiceAgreement, ProviderSlot, derive_agreement_id
from .errors import InvalidQuorum, LengthMismatch, Unauthorized, AgreementActive
from .events import EventType
from .store import BrokerStore

logger = logging.getLogger("quorum.broker.registry")


class AgreementRegistry:
    """Registry of service agreements"""

    def __init__(self, store: BrokerStore):
        self.store = store

    def _require_admin(self, initiator: str, action: str):
        if initiator != self.store.config.admin_id:
            logger.warning(f"Rejected {action} by non-admin {initiator}")
            raise Unauthorized(initiator, action)

    async def create(
        self,
        initiator: str,
        min_responses: int,
        providers: List[str],
        job_specs: List[str],
        fees: List[int]
    ) -> str:
        """
        Store a new agreement and publish NEW_SERVICE_AGREEMENT.

        Raises:
            Unauthorized: If initiator is not the administrator
            LengthMismatch: If providers, job_specs and fees differ in length
            InvalidQuorum: If min_responses is 0 or exceeds the provider count
        """
        self._require_admin(initiator, "create service agreement")

        if min_responses <= 0:
            raise InvalidQuorum(min_responses, len(providers))
        if not (len(providers) == len(job_specs) == len(fees)):
            raise LengthMismatch(len(providers), len(job_specs), len(fees))
        if min_responses > len(providers):
            raise InvalidQuorum(min_responses, len(providers))
        for fee in fees:
            if fee < 0:
                raise ValueError(f"Fees must be non-negative, got {fee}")

        slots = [
            ProviderSlot(provider_ref=p, job_spec=j, fee=f)
            for p, j, f in zip(providers, job_specs, fees)
        ]

        async with self.store.registry_lock:
            self.store.agreement_nonce += 1
            agreement_id = derive_agreement_id(min_responses, slots, self.store.agreement_nonce)
            agreement = ServiceAgreement(
                agreement_id=agreement_id,
                min_responses=min_responses,
                slots=slots,
                created_at=self.store.now(),
            )
            self.store.agreements[agreement_id] = agreement

        logger.info(
            f"Service agreement created: id={agreement_id} "
            f"M={min_responses} N={len(slots)} total_fee={agreement.total_fee}"
        )
        await self.store.events.publish(
            EventType.NEW_SERVICE_AGREEMENT,
            agreement_id=agreement_id,
            min_responses=min_responses,
            total_fee=agreement.total_fee,
        )
        return agreement_id

    def get(self, agreement_id: str) -> ServiceAgreement:
        """Return the agreement, or an empty record for unknown/deleted ids"""
        agreement = self.store.get_agreement(agreement_id)
        if agreement is None:
            return ServiceAgreement.empty(agreement_id)
        return agreement

    async def delete(self, initiator: str, agreement_id: str):
        """
        Remove an agreement with no in-flight requests.

        Deleting an unknown id is a no-op; it already reads back empty.

        Raises:
            Unauthorized: If initiator is not the administrator
            AgreementActive: If the agreement still has active requests
        """
        self._require_admin(initiator, "delete service agreement")

        async with self.store.registry_lock:
            agreement = self.store.get_agreement(agreement_id)
            if agreement is None:
                return
            if agreement.active_requests > 0:
                logger.warning(
                    f"Refusing to delete {agreement_id}: "
                    f"{agreement.active_requests} active requests"
                )
                raise AgreementActive(agreement_id, agreement.active_requests)
            del self.store.agreements[agreement_id]

        logger.info(f"Service agreement deleted: id={agreement_id}")
        await self.store.events.publish(
            EventType.SERVICE_AGREEMENT_DELETED,
            agreement_id=agreement_id,
        )

    async def release_active(self, agreement_id: str):
        """Decrement the active-request counter when a request goes terminal"""
        async with self.store.registry_lock:
            agreement = self.store.get_agreement(agreement_id)
            if agreement is None:
                logger.error(f"Active request released for missing agreement {agreement_id}")
                return
            agreement.active_requests = max(0, agreement.active_requests - 1)
