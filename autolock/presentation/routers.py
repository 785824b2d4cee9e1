from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from autolock.core.gateways.payment_gateway import PaymentGateway
from autolock.core.use_cases.handle_payment_webhook import InvalidSignatureError
from autolock.core.use_cases.session_lifecycle import (
    Clock,
    GatewayRejectedError,
    LockerOccupiedError,
    SessionNotFoundError,
    utcnow,
)
from autolock.infrastructure.database import SessionLocal
from autolock.schemas.models import (
    Dashboard,
    EndSessionRequest,
    EndSessionResponse,
    PollStatusResponse,
    PrepaySessionRequest,
    RetrieveSessionRequest,
    RetrieveSessionResponse,
    StartSessionRequest,
    StartSessionResponse,
    SubmitChargeOtpRequest,
    SubmitChargeOtpResponse,
    WebhookAck,
)
from autolock.services.autolock_service import (
    build_payment_gateway,
    end_session_service,
    get_dashboard_service,
    handle_webhook_service,
    poll_status_service,
    prepay_session_service,
    retrieve_session_service,
    start_session_service,
    submit_charge_otp_service,
)

router = APIRouter(prefix="/api")


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway()


def get_clock() -> Clock:
    return utcnow


@router.post("/session/start", response_model=StartSessionResponse, status_code=201)
def post_session_start(
    body: StartSessionRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
) -> StartSessionResponse:
    """
    Store goods: open a free session, the billing clock starts now

    Returns:
      - 201 with the new session
      - 409 if the locker already has an open session
    """
    try:
        return start_session_service(body, db, gateway, clock)
    except LockerOccupiedError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/session/prepay", response_model=StartSessionResponse, status_code=201)
def post_session_prepay(
    body: PrepaySessionRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
) -> StartSessionResponse:
    """
    Pay first: open a session and send an M-Pesa push to the payer

    Returns:
      - 201 with the pending session
      - 409 if the locker already has an open session
      - 502 if the charge could not be initiated (the session is marked failed)
    """
    try:
        return prepay_session_service(body, db, gateway, clock)
    except LockerOccupiedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GatewayRejectedError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/session/retrieve", response_model=RetrieveSessionResponse)
def post_session_retrieve(
    body: RetrieveSessionRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
) -> RetrieveSessionResponse:
    """
    Request the retrieval fee; the unlock code follows once the gateway confirms the payment
    """
    try:
        return retrieve_session_service(body, db, gateway, clock)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GatewayRejectedError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/session/end", response_model=EndSessionResponse)
def post_session_end(
    body: EndSessionRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
) -> EndSessionResponse:
    """
    End the locker's session and bill elapsed time. The locker is released even if the charge fails.
    """
    try:
        return end_session_service(body, db, gateway, clock)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get(
    "/session/status/{locker_id}",
    response_model=PollStatusResponse,
    response_model_exclude_none=True,
)
def get_session_status(
    locker_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
) -> PollStatusResponse:
    """
    Device poll: {"paid": false} until an unlock code is ready, then the code exactly once
    """
    return poll_status_service(locker_id, db, gateway, clock)


@router.post("/webhook/paystack", response_model=WebhookAck)
async def post_webhook_paystack(
    request: Request,
    x_paystack_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
) -> WebhookAck:
    """
    Paystack webhook. The signature is checked on the raw body.

    Returns:
      - 200 {"received": true} for every authentic delivery, applied or not
      - 401 if the signature does not match
    """
    raw_body = await request.body()
    try:
        return await run_in_threadpool(handle_webhook_service, raw_body, x_paystack_signature, db, gateway, clock)
    except InvalidSignatureError as e:
        raise HTTPException(status_code=401, detail=str(e))


@router.get("/dashboard", response_model=Dashboard)
def get_dashboard(
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dashboard:
    """
    Read-only list of the most recent sessions with elapsed minutes and running cost
    """
    return get_dashboard_service(limit, db, clock)


@router.post("/payments/submit-otp", response_model=SubmitChargeOtpResponse)
def post_payments_submit_otp(
    body: SubmitChargeOtpRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> SubmitChargeOtpResponse:
    """
    Complete a test-mode mobile-money charge (Paystack test keys answer with send_otp)

    Returns:
      - 200 with the gateway outcome
      - 404 unless the gateway runs on test keys, live charges are confirmed on the payer's phone
    """
    if not gateway.is_test_mode:
        raise HTTPException(status_code=404, detail="Not Found")
    return submit_charge_otp_service(body, gateway)
