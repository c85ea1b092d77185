"""
Broker Errors - rejection taxonomy for every broker entry point

All validation failures reject the triggering call with no partial state
change. Each error carries a stable error_code and a context dict so the
HTTP layer can render a uniform envelope.
"""

from typing import Optional, Dict, Any


class BrokerError(Exception):
    """Base class for all broker rejections"""

    error_code = "BROKER_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class InvalidQuorum(BrokerError):
    error_code = "INVALID_QUORUM"

    def __init__(self, min_responses: int, provider_count: int):
        if min_responses <= 0:
            message = "Min responses must be > 0"
        else:
            message = "Invalid min responses"
        super().__init__(
            message,
            {"min_responses": min_responses, "provider_count": provider_count},
        )


class LengthMismatch(BrokerError):
    error_code = "LENGTH_MISMATCH"

    def __init__(self, providers: int, job_specs: int, fees: int):
        super().__init__(
            "Unmet length",
            {"providers": providers, "job_specs": job_specs, "fees": fees},
        )


class Unauthorized(BrokerError):
    error_code = "UNAUTHORIZED"

    def __init__(self, initiator: str, action: str):
        self.initiator = initiator
        self.action = action
        super().__init__(
            f"{initiator} is not allowed to {action}",
            {"initiator": initiator, "action": action},
        )


class AgreementActive(BrokerError):
    error_code = "AGREEMENT_ACTIVE"

    def __init__(self, agreement_id: str, active_requests: int):
        super().__init__(
            "Cannot delete while active",
            {"agreement_id": agreement_id, "active_requests": active_requests},
        )


class UnknownAgreement(BrokerError):
    error_code = "UNKNOWN_AGREEMENT"

    def __init__(self, agreement_id: str):
        super().__init__(
            f"Service agreement {agreement_id} not found",
            {"agreement_id": agreement_id},
        )


class ReplayedNonce(BrokerError):
    error_code = "REPLAYED_NONCE"

    def __init__(self, caller: str, nonce: int):
        super().__init__(
            f"Nonce {nonce} already used by {caller}",
            {"caller": caller, "nonce": nonce},
        )


class InsufficientPayment(BrokerError):
    error_code = "INSUFFICIENT_PAYMENT"

    def __init__(self, deposit: int, expected: int):
        super().__init__(
            f"Insufficient payment: got {deposit}, need {expected}",
            {"deposit": deposit, "expected": expected},
        )


class EscrowExhausted(BrokerError):
    error_code = "ESCROW_EXHAUSTED"

    def __init__(self, request_id: str, remaining: int, amount: int):
        super().__init__(
            f"Escrow for {request_id} cannot cover {amount} (remaining {remaining})",
            {"request_id": request_id, "remaining": remaining, "amount": amount},
        )


class WrongSender(BrokerError):
    error_code = "WRONG_SENDER"

    def __init__(self, sender: str):
        super().__init__(
            "Must use the recognized ledger",
            {"sender": sender},
        )


class WrongOrigin(BrokerError):
    error_code = "WRONG_ORIGIN"

    def __init__(self, sub_request_id: str, responder: str):
        super().__init__(
            "Source must be the registered provider of this sub-request",
            {"sub_request_id": sub_request_id, "responder": responder},
        )


class UnknownRequest(BrokerError):
    error_code = "UNKNOWN_REQUEST"

    def __init__(self, request_id: str):
        super().__init__(
            f"Aggregation request {request_id} not found",
            {"request_id": request_id},
        )


class UnknownSubRequest(BrokerError):
    error_code = "UNKNOWN_SUB_REQUEST"

    def __init__(self, request_id: str, sub_request_id: str):
        super().__init__(
            f"Sub-request {sub_request_id} not found in {request_id}",
            {"request_id": request_id, "sub_request_id": sub_request_id},
        )


class NotExpired(BrokerError):
    error_code = "NOT_EXPIRED"

    def __init__(self, sub_request_id: str, reason: str = "Request is not expired"):
        super().__init__(reason, {"sub_request_id": sub_request_id})


class CallbackDeliveryError(BrokerError):
    """
    Final value could not be delivered to the consumer.

    Never raised out of the aggregator: recorded on the request and handed to
    delivery-failure listeners instead.
    """

    error_code = "CALLBACK_DELIVERY_FAILED"

    def __init__(
        self,
        request_id: str,
        target: str,
        original_error: Optional[Exception] = None
    ):
        self.original_error = original_error
        super().__init__(
            f"Callback delivery to {target} failed for {request_id}: {original_error}",
            {"request_id": request_id, "target": target},
        )


class InvalidResponseValue(BrokerError):
    error_code = "INVALID_RESPONSE_VALUE"

    def __init__(self, sub_request_id: str, value: Any):
        super().__init__(
            "Response value must be a finite number",
            {"sub_request_id": sub_request_id, "value": repr(value)},
        )


class MalformedMessage(BrokerError):
    error_code = "MALFORMED_MESSAGE"

    def __init__(self, reason: str):
        super().__init__(f"Malformed provider message: {reason}", {"reason": reason})
