"""
Quorum Broker API - HTTP and WebSocket surface over the QuorumBroker

Actors identify themselves with the X-Identity header; administrative
endpoints additionally require X-API-Key when BROKER_ADMIN_API_KEY is set.
Providers either connect over WS /ws/providers/{provider_ref} to receive
sub-requests and answer them, or POST responses directly.
"""

import json
import logging
import logging.config
import platform
from datetime import datetime
from typing import Optional, Dict, Any, List, Union

from fastapi import FastAPI, Depends, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError, validator
from pydantic.types import StrictFloat, StrictInt, conint
from sqlalchemy import inspect

from src.auth import verify_admin_api_key, verify_provider_websocket, require_identity, is_auth_enabled
from src.broker import (
    BrokerError,
    CallbackRouter,
    InMemoryLedger,
    InMemoryProviderChannel,
    MalformedMessage,
    ProviderChannel,
    QuorumBroker,
    RedisProviderChannel,
    SubRequestDescriptor,
    WrongSender,
)
from src.config import Settings, settings
from src.middleware import CorrelationIdMiddleware, correlation_scope
from src.models import Base, engine, SessionLocal, AuditSink

logger = logging.getLogger("quorum.api")

# Broker error → HTTP status
ERROR_STATUS: Dict[str, int] = {
    "INVALID_QUORUM": 400,
    "LENGTH_MISMATCH": 400,
    "UNAUTHORIZED": 403,
    "WRONG_SENDER": 403,
    "WRONG_ORIGIN": 403,
    "UNKNOWN_AGREEMENT": 404,
    "UNKNOWN_REQUEST": 404,
    "UNKNOWN_SUB_REQUEST": 404,
    "AGREEMENT_ACTIVE": 409,
    "REPLAYED_NONCE": 409,
    "NOT_EXPIRED": 409,
    "ESCROW_EXHAUSTED": 409,
    "INVALID_RESPONSE_VALUE": 400,
    "MALFORMED_MESSAGE": 400,
    "INSUFFICIENT_PAYMENT": 402,
}


# =============================================================================
# Provider WebSocket Connection Manager
# =============================================================================

class ProviderConnectionManager(ProviderChannel):
    """
    Delivers sub-requests to providers connected over WebSocket.

    Descriptors for providers that are not connected are held and flushed
    when the provider connects.
    """

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.pending: Dict[str, List[SubRequestDescriptor]] = {}
        self.provider_info: Dict[str, Dict[str, Any]] = {}

    async def connect(self, websocket: WebSocket, provider_ref: str):
        self.active_connections[provider_ref] = websocket
        self.provider_info[provider_ref] = {
            "provider_ref": provider_ref,
            "connected_at": datetime.utcnow().isoformat(),
            "last_heartbeat": datetime.utcnow().isoformat(),
        }
        for descriptor in self.pending.pop(provider_ref, []):
            await self._push(websocket, descriptor)

    def disconnect(self, provider_ref: str, websocket: Optional[WebSocket] = None):
        if websocket is not None and self.active_connections.get(provider_ref) is not websocket:
            return
        self.active_connections.pop(provider_ref, None)
        if provider_ref in self.provider_info:
            self.provider_info[provider_ref]["status"] = "disconnected"

    def update_heartbeat(self, provider_ref: str):
        if provider_ref in self.provider_info:
            self.provider_info[provider_ref]["last_heartbeat"] = datetime.utcnow().isoformat()

    async def send(self, descriptor: SubRequestDescriptor) -> None:
        websocket = self.active_connections.get(descriptor.provider_ref)
        if websocket is None:
            self.pending.setdefault(descriptor.provider_ref, []).append(descriptor)
            logger.info(
                f"Provider {descriptor.provider_ref} offline, holding sub-request "
                f"{descriptor.sub_request_id}"
            )
            return
        await self._push(websocket, descriptor)

    @staticmethod
    async def _push(websocket: WebSocket, descriptor: SubRequestDescriptor):
        await websocket.send_json({"type": "sub_request", **descriptor.to_dict()})

    def get_active_provider_count(self) -> int:
        return len(self.active_connections)


# =============================================================================
# Broker construction
# =============================================================================

def build_channel(config: Settings, manager: ProviderConnectionManager) -> ProviderChannel:
    kind = config.PROVIDER_CHANNEL.lower()
    if kind == "redis":
        return RedisProviderChannel(url=config.REDIS_URL)
    if kind == "memory":
        return InMemoryProviderChannel()
    return manager


def build_broker(config: Settings, channel: ProviderChannel) -> QuorumBroker:
    broker_config = config.broker_config()
    ledger = InMemoryLedger(identity=broker_config.ledger_id)
    return QuorumBroker(
        ledger=ledger,
        config=broker_config,
        channel=channel,
        callbacks=CallbackRouter(webhook_timeout=config.CALLBACK_TIMEOUT),
    )


app = FastAPI(
    title="Quorum Broker",
    description="M-of-N request aggregation broker with escrow",
    version="1.0.0"
)
app.add_middleware(CorrelationIdMiddleware)

manager = ProviderConnectionManager()
app.state.broker = build_broker(settings, build_channel(settings, manager))


def get_broker(request: Request) -> QuorumBroker:
    return request.app.state.broker


@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError):
    status_code = ERROR_STATUS.get(exc.error_code, 400)
    logger.warning(f"{request.method} {request.url.path} rejected: {exc.error_code} {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# =============================================================================
# Startup / Shutdown
# =============================================================================

@app.on_event("startup")
async def configure_logging():
    logging.config.dictConfig(settings.get_log_config())
    logger.info(f"Quorum broker starting ({settings.ENVIRONMENT})")


@app.on_event("startup")
async def verify_schema():
    """Verify the audit table exists, then attach the audit sink"""
    inspector = inspect(engine)
    if "broker_events" not in inspector.get_table_names():
        if settings.is_production:
            logger.error("Schema verification failed. Missing tables: ['broker_events']")
            raise RuntimeError("Missing tables: ['broker_events']. Run: alembic upgrade head")
        logger.warning("broker_events table missing - creating it (non-production)")
        Base.metadata.create_all(bind=engine)

    app.state.broker.events.subscribe(AuditSink(SessionLocal))
    logger.info("Audit sink attached")


@app.on_event("shutdown")
async def close_collaborators():
    broker: QuorumBroker = app.state.broker
    await broker.aggregator.shutdown()
    await broker.callbacks.close()
    if isinstance(broker.channel, RedisProviderChannel):
        await broker.channel.close()


# =============================================================================
# Pydantic Models
# =============================================================================

class AgreementCreate(BaseModel):
    """Service agreement creation; quorum and length rules are enforced by the registry"""
    min_responses: int = Field(..., description="Quorum M")
    providers: List[str] = Field(..., description="Provider refs, one per slot")
    job_specs: List[str] = Field(..., description="Job spec per slot")
    fees: List[conint(ge=0)] = Field(..., description="Fee per slot in token units")

    @validator('providers', 'job_specs', each_item=True)
    def non_blank(cls, v):
        if not v.strip():
            raise ValueError('Entries must be non-empty')
        return v.strip()

    class Config:
        extra = "forbid"


class DepositData(BaseModel):
    agreement_id: str
    nonce: conint(ge=0)
    callback_target: Optional[str] = None
    callback_method: Optional[str] = None


class DepositCreate(BaseModel):
    """Deposit-with-data notification sent by the ledger"""
    depositor: str = Field(..., min_length=1)
    amount: conint(ge=0)
    data: DepositData

    class Config:
        extra = "forbid"


class ResponseSubmit(BaseModel):
    sub_request_id: str
    value: Union[StrictInt, StrictFloat]

    class Config:
        extra = "forbid"


class ProviderResponseMessage(ResponseSubmit):
    """`response` frame sent by a provider over the WebSocket"""
    type: str
    request_id: str
    correlation_id: Optional[str] = None


class WithdrawRequest(BaseModel):
    to: Optional[str] = None


# =============================================================================
# Health
# =============================================================================

@app.get("/health")
async def health_check(broker: QuorumBroker = Depends(get_broker)):
    channel_healthy = True
    if isinstance(broker.channel, RedisProviderChannel):
        channel_healthy = await broker.channel.ping()

    return {
        "status": "healthy" if channel_healthy else "degraded",
        "platform": platform.system(),
        "timestamp": datetime.utcnow().isoformat(),
        "channel": type(broker.channel).__name__,
        "channel_healthy": channel_healthy,
        "connected_providers": manager.get_active_provider_count(),
        "auth_enabled": is_auth_enabled(),
        "broker": broker.get_status(),
    }


# =============================================================================
# Service Agreements
# =============================================================================

@app.post("/agreements", status_code=201)
async def create_agreement(
    body: AgreementCreate,
    x_identity: Optional[str] = Header(None, alias="X-Identity"),
    api_key: str = Depends(verify_admin_api_key),
    broker: QuorumBroker = Depends(get_broker)
):
    initiator = require_identity(x_identity, "X-Identity")
    agreement_id = await broker.create_service_agreement(
        initiator, body.min_responses, body.providers, body.job_specs, list(body.fees)
    )
    return broker.get_service_agreement(agreement_id).to_dict()


@app.get("/agreements/{agreement_id}")
async def get_agreement(agreement_id: str, broker: QuorumBroker = Depends(get_broker)):
    """Unknown and deleted agreements read back as an empty record"""
    return broker.get_service_agreement(agreement_id).to_dict()


@app.delete("/agreements/{agreement_id}")
async def delete_agreement(
    agreement_id: str,
    x_identity: Optional[str] = Header(None, alias="X-Identity"),
    api_key: str = Depends(verify_admin_api_key),
    broker: QuorumBroker = Depends(get_broker)
):
    initiator = require_identity(x_identity, "X-Identity")
    await broker.delete_service_agreement(initiator, agreement_id)
    return {"agreement_id": agreement_id, "deleted": True}


# =============================================================================
# Deposits (ledger hook)
# =============================================================================

@app.post("/ledger/deposits", status_code=201)
async def deposit(
    body: DepositCreate,
    x_identity: Optional[str] = Header(None, alias="X-Identity"),
    broker: QuorumBroker = Depends(get_broker)
):
    """
    Ledger notification that `amount` arrived for the broker.

    The local ledger mirror is credited first so refunds can be paid; a
    rejected deposit is burned back out, leaving no trace.
    """
    sender = require_identity(x_identity, "X-Identity")
    ledger = broker.ledger
    data = body.data.dict()

    if sender != broker.config.ledger_id:
        raise WrongSender(sender)

    ledger.mint(broker.config.broker_id, body.amount)
    try:
        request_id = await broker.on_token_transfer(sender, body.depositor, body.amount, data)
    except Exception:
        ledger.burn(broker.config.broker_id, body.amount)
        raise

    request = broker.get_request(request_id)
    return {
        "request_id": request_id,
        "escrow": request.escrow_remaining,
        "refund": body.amount - request.escrow_remaining,
        "sub_requests": [s.sub_request_id for s in request.sub_requests],
    }


# =============================================================================
# Aggregation Requests
# =============================================================================

@app.get("/requests/{request_id}")
async def get_request(request_id: str, broker: QuorumBroker = Depends(get_broker)):
    request = broker.get_request(request_id)
    if request is None:
        raise HTTPException(status_code=404, detail=f"Request {request_id} not found")
    return request.to_dict()


@app.post("/requests/{request_id}/responses")
async def submit_response(
    request_id: str,
    body: ResponseSubmit,
    x_identity: Optional[str] = Header(None, alias="X-Identity"),
    broker: QuorumBroker = Depends(get_broker)
):
    responder = require_identity(x_identity, "X-Identity")
    outcome = await broker.receive(request_id, body.sub_request_id, body.value, responder)
    return outcome.to_dict()


@app.post("/requests/{request_id}/sub-requests/{sub_request_id}/cancel")
async def cancel_sub_request(
    request_id: str,
    sub_request_id: str,
    x_identity: Optional[str] = Header(None, alias="X-Identity"),
    broker: QuorumBroker = Depends(get_broker)
):
    initiator = require_identity(x_identity, "X-Identity")
    request = await broker.cancel(request_id, sub_request_id, initiator)
    return request.to_dict()


# =============================================================================
# Administration
# =============================================================================

@app.post("/admin/withdraw")
async def withdraw(
    body: WithdrawRequest,
    x_identity: Optional[str] = Header(None, alias="X-Identity"),
    api_key: str = Depends(verify_admin_api_key),
    broker: QuorumBroker = Depends(get_broker)
):
    initiator = require_identity(x_identity, "X-Identity")
    amount = await broker.withdraw(initiator, body.to)
    return {"withdrawn": amount, "to": body.to or initiator}


# =============================================================================
# Provider WebSocket
# =============================================================================

@app.websocket("/ws/providers/{provider_ref}")
async def provider_websocket(websocket: WebSocket, provider_ref: str):
    """
    Protocol: connect -> sub_request pushes / response + heartbeat messages

    Security: Validates X-API-Key header BEFORE accepting connection
    """
    if not await verify_provider_websocket(websocket):
        await websocket.close(code=1008, reason="Authentication required")
        return

    await websocket.accept()
    await manager.connect(websocket, provider_ref)
    logger.info(f"Provider connected: {provider_ref}")
    broker: QuorumBroker = websocket.app.state.broker

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = None
            if not isinstance(data, dict):
                logger.warning(f"Non-JSON-object frame from {provider_ref}")
                await websocket.send_json(
                    {"type": "response_error", **MalformedMessage("expected a JSON object").to_dict()}
                )
                continue

            msg_type = data.get("type")

            if msg_type == "response":
                corr_hint = data.get("correlation_id")
                with correlation_scope(corr_hint if isinstance(corr_hint, str) else None) as corr_id:
                    try:
                        message = ProviderResponseMessage(**data)
                        outcome = await broker.receive(
                            message.request_id,
                            message.sub_request_id,
                            message.value,
                            provider_ref,
                        )
                        reply = {"type": "response_ack", **outcome.to_dict()}
                    except ValidationError as e:
                        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
                        reply = {"type": "response_error", **MalformedMessage(f"invalid fields: {fields}").to_dict()}
                    except BrokerError as e:
                        reply = {"type": "response_error", **e.to_dict()}
                    await websocket.send_json({**reply, "correlation_id": corr_id})

            elif msg_type == "heartbeat":
                manager.update_heartbeat(provider_ref)

            else:
                logger.warning(f"Unknown message type from {provider_ref}: {msg_type}")

    except WebSocketDisconnect:
        logger.info(f"Provider disconnected: {provider_ref}")
    except Exception as e:
        logger.error(f"Provider connection {provider_ref} failed: {e!r}")
        raise
    finally:
        manager.disconnect(provider_ref, websocket)


# =============================================================================
# Main entry point for development
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
