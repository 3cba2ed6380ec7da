from fastapi import APIRouter, Depends, WebSocket, status
from sqlalchemy.ext.asyncio import AsyncSession

from .breaker import CircuitBreaker
from .db import SessionLocal
from .errors import NotParticipant, SessionServiceError
from .extensions import ExtensionNegotiator
from .metrics import Metrics
from .notifications import stream_booking_events
from .payments import StripePayments
from .payouts import account_status
from .phase_clock import get_session_state
from .rabbitmq import publisher
from .redis_client import redis_client
from .schemas import (
    AccountStatusResponse,
    CreateExtensionRequest,
    ExtensionCheckRequest,
    ExtensionCheckResponse,
    ExtensionResponse,
    FinalizeRequest,
    FinalizeResponse,
    RespondExtensionRequest,
    SessionStateRequest,
    SessionStateResponse,
)
from .security import USER_SUB_HEADER, get_caller
from .settlement import SettlementEngine

router = APIRouter()

cb_stripe = CircuitBreaker(redis_client, "stripe", failure_threshold=5, reset_timeout_seconds=15)
_payments = StripePayments(cb_stripe)
_metrics = Metrics(redis_client)


async def get_db():
    async with SessionLocal() as session:
        yield session


def get_publisher():
    return publisher


def get_payments():
    return _payments


def get_metrics():
    return _metrics


def get_negotiator(
    db: AsyncSession = Depends(get_db),
    pub=Depends(get_publisher),
    payments=Depends(get_payments),
    metrics=Depends(get_metrics),
) -> ExtensionNegotiator:
    return ExtensionNegotiator(db, publisher=pub, payments=payments, metrics=metrics)


# ---------- phase clock ----------

@router.post("/session-state", response_model=SessionStateResponse)
async def session_state(
    data: SessionStateRequest,
    db: AsyncSession = Depends(get_db),
    metrics=Depends(get_metrics),
):
    reading = await get_session_state(db, data.booking_id, metrics=metrics)
    return SessionStateResponse(**reading.as_dict())


# ---------- settlement ----------

@router.post("/finalize", response_model=FinalizeResponse)
async def finalize(
    data: FinalizeRequest,
    db: AsyncSession = Depends(get_db),
    pub=Depends(get_publisher),
    payments=Depends(get_payments),
    metrics=Depends(get_metrics),
):
    engine = SettlementEngine(db, payments=payments, publisher=pub, metrics=metrics)
    return await engine.finalize(data.booking_id, data.end_reason)


# ---------- extensions ----------

@router.post("/extensions/check", response_model=ExtensionCheckResponse)
async def check_extension(
    data: ExtensionCheckRequest,
    caller: str = Depends(get_caller),
    negotiator: ExtensionNegotiator = Depends(get_negotiator),
):
    return await negotiator.check_offer(data.booking_id, caller)


@router.post("/extensions", response_model=ExtensionResponse, status_code=status.HTTP_201_CREATED)
async def create_extension(
    data: CreateExtensionRequest,
    caller: str = Depends(get_caller),
    negotiator: ExtensionNegotiator = Depends(get_negotiator),
):
    return await negotiator.request(data.booking_id, caller, data.amount_cents)


@router.get("/extensions/{extension_id}", response_model=ExtensionResponse)
async def get_extension(
    extension_id: str,
    caller: str = Depends(get_caller),
    negotiator: ExtensionNegotiator = Depends(get_negotiator),
):
    return await negotiator.get(extension_id, caller)


@router.post("/extensions/{extension_id}/respond", response_model=ExtensionResponse)
async def respond_to_extension(
    extension_id: str,
    data: RespondExtensionRequest,
    caller: str = Depends(get_caller),
    negotiator: ExtensionNegotiator = Depends(get_negotiator),
):
    return await negotiator.respond(extension_id, caller, data.response)


@router.get("/bookings/{booking_id}/extensions/pending", response_model=ExtensionResponse | None)
async def pending_extension(
    booking_id: str,
    caller: str = Depends(get_caller),
    negotiator: ExtensionNegotiator = Depends(get_negotiator),
):
    return await negotiator.pending_for(booking_id, caller)


@router.websocket("/ws/bookings/{booking_id}/extensions")
async def extension_events(
    websocket: WebSocket,
    booking_id: str,
    negotiator: ExtensionNegotiator = Depends(get_negotiator),
    pub=Depends(get_publisher),
):
    # only the gateway-verified header; browsers connect through the gateway
    caller = websocket.headers.get(USER_SUB_HEADER)
    if not caller:
        await websocket.close(code=1008)
        return
    try:
        pending = await negotiator.pending_for(booking_id, caller)
    except SessionServiceError:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    await websocket.send_json({
        "event_type": "extension.snapshot",
        "data": {
            "booking_id": booking_id,
            "pending": pending.model_dump(mode="json") if pending else None,
        },
    })

    if not pub.enabled:
        await websocket.close()
        return

    await stream_booking_events(websocket, booking_id)


# ---------- payouts ----------

@router.get("/payouts/accounts/{user_id}/status", response_model=AccountStatusResponse)
async def payout_account_status(
    user_id: str,
    caller: str = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    payments=Depends(get_payments),
    metrics=Depends(get_metrics),
):
    if caller != user_id:
        raise NotParticipant("Callers may only check their own payout account")
    return await account_status(db, payments, user_id, metrics=metrics)
