from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from autolock.core.entities.session import ChargeStatus as CoreChargeStatus
from autolock.core.gateways.payment_gateway import PaymentGateway
from autolock.core.services.otp_issuer import OtpIssuer
from autolock.core.use_cases.get_dashboard import GetDashboardUseCase
from autolock.core.use_cases.handle_payment_webhook import HandlePaymentWebhookUseCase
from autolock.core.use_cases.poll_unlock_code import PollUnlockCodeUseCase
from autolock.core.use_cases.session_lifecycle import (
    Clock,
    LifecycleConfig,
    SessionLifecycleController,
    utcnow,
)
from autolock.infrastructure.gateways.paystack_gateway import PaystackGateway
from autolock.infrastructure.repositories.session_repository_impl import SessionRepositoryImpl
from autolock.schemas.models import (
    ChargeOutcome,
    ChargeStatus,
    Dashboard,
    DashboardSession,
    EndSessionRequest,
    EndSessionResponse,
    PollStatusResponse,
    PrepaySessionRequest,
    RetrieveSessionRequest,
    RetrieveSessionResponse,
    StartSessionRequest,
    StartSessionResponse,
    Status,
    SubmitChargeOtpRequest,
    SubmitChargeOtpResponse,
    WebhookAck,
)


def _settings():
    from autolock.infrastructure.config import settings
    return settings


def lifecycle_config_from_settings() -> LifecycleConfig:
    settings = _settings()
    return LifecycleConfig(
        rate_per_minute=settings.rate_per_minute,
        retrieve_flat_rate=settings.retrieve_flat_rate,
        prepay_amount=settings.prepay_amount,
        pending_payment_ttl=timedelta(seconds=settings.pending_payment_ttl_seconds),
        paid_ttl=timedelta(seconds=settings.paid_ttl_seconds),
        active_ttl=timedelta(seconds=settings.active_ttl_seconds) if settings.active_ttl_seconds > 0 else None,
    )


def otp_issuer_from_settings() -> OtpIssuer:
    settings = _settings()
    return OtpIssuer(secret=settings.otp_secret, length=settings.otp_length)


def build_payment_gateway() -> PaystackGateway:
    settings = _settings()
    return PaystackGateway(
        secret_key=settings.paystack_secret_key,
        base_url=settings.paystack_base_url,
        timeout=settings.paystack_timeout_seconds,
        currency=settings.currency,
        email_domain=settings.email_domain,
    )


def build_controller(db: Session, gateway: PaymentGateway, clock: Clock = utcnow) -> SessionLifecycleController:
    return SessionLifecycleController(
        session_repo=SessionRepositoryImpl(db),
        gateway=gateway,
        otp_issuer=otp_issuer_from_settings(),
        config=lifecycle_config_from_settings(),
        clock=clock,
    )


def start_session_service(
    body: StartSessionRequest, db: Session, gateway: PaymentGateway, clock: Clock = utcnow
) -> StartSessionResponse:
    result = build_controller(db, gateway, clock).start_store(body.locker_id)
    return StartSessionResponse(session_id=result.session_id, status=Status(result.status.value))


def prepay_session_service(
    body: PrepaySessionRequest, db: Session, gateway: PaymentGateway, clock: Clock = utcnow
) -> StartSessionResponse:
    result = build_controller(db, gateway, clock).start_prepay(body.locker_id, body.phone)
    return StartSessionResponse(
        session_id=result.session_id,
        status=Status(result.status.value),
        reference=result.reference,
        message="Check your phone to complete the M-Pesa payment.",
    )


def retrieve_session_service(
    body: RetrieveSessionRequest, db: Session, gateway: PaymentGateway, clock: Clock = utcnow
) -> RetrieveSessionResponse:
    currency = _settings().currency
    result = build_controller(db, gateway, clock).retrieve(body.locker_id, body.phone)
    return RetrieveSessionResponse(
        session_id=result.session_id,
        minutes_used=result.minutes_used,
        amount=result.amount,
        reference=result.reference,
        message=f"{currency} {result.amount} for {result.minutes_used} min. Check phone to pay.",
    )


def end_session_service(
    body: EndSessionRequest, db: Session, gateway: PaymentGateway, clock: Clock = utcnow
) -> EndSessionResponse:
    currency = _settings().currency
    result = build_controller(db, gateway, clock).end(body.locker_id, body.phone)

    if result.charge_status is CoreChargeStatus.SENT:
        message = f"Payment of {currency} {result.amount_charged} sent to phone. Session ended."
    elif result.charge_status is CoreChargeStatus.FAILED:
        message = f"Session ended. Payment of {currency} {result.amount_charged} failed, flagged for follow-up."
    else:
        message = f"Session ended. {currency} {result.amount_charged} was already requested at retrieval."

    return EndSessionResponse(
        session_id=result.session_id,
        minutes_used=result.minutes_used,
        amount_charged=result.amount_charged,
        charge_status=ChargeStatus(result.charge_status.value),
        message=message,
    )


def poll_status_service(
    locker_id: str, db: Session, gateway: PaymentGateway, clock: Clock = utcnow
) -> PollStatusResponse:
    use_case = PollUnlockCodeUseCase(controller=build_controller(db, gateway, clock))
    dto = use_case.execute(locker_id=locker_id)
    return PollStatusResponse(paid=dto.paid, otp=dto.otp)


def handle_webhook_service(
    raw_body: bytes, signature: str | None, db: Session, gateway: PaymentGateway, clock: Clock = utcnow
) -> WebhookAck:
    use_case = HandlePaymentWebhookUseCase(gateway=gateway, controller=build_controller(db, gateway, clock))
    use_case.execute(raw_body=raw_body, signature=signature)
    return WebhookAck(received=True)


def get_dashboard_service(limit: int, db: Session, clock: Clock = utcnow) -> Dashboard:
    use_case = GetDashboardUseCase(
        session_repo=SessionRepositoryImpl(db),
        rate_per_minute=_settings().rate_per_minute,
    )
    rows = use_case.execute(now=clock(), limit=limit)

    sessions = [
        DashboardSession(
            id=row.id,
            locker_id=row.locker_id,
            phone=row.phone,
            status=Status(row.status.value),
            otp_delivered=row.otp_delivered,
            amount_initial=row.amount_initial,
            amount_final=row.amount_final,
            final_charge_status=ChargeStatus(row.final_charge_status) if row.final_charge_status else None,
            started_at=row.started_at,
            ended_at=row.ended_at,
            created_at=row.created_at,
            minutes_used=row.minutes_used,
            current_cost=row.current_cost,
        )
        for row in rows
    ]
    return Dashboard(count=len(sessions), sessions=sessions)


def submit_charge_otp_service(body: SubmitChargeOtpRequest, gateway: PaymentGateway) -> SubmitChargeOtpResponse:
    result = gateway.submit_charge_otp(body.otp, body.reference)
    return SubmitChargeOtpResponse(
        reference=result.reference,
        outcome=ChargeOutcome(result.outcome.value),
        message=result.message,
    )


def expire_stale_sessions_service(db: Session, gateway: PaymentGateway, clock: Clock = utcnow) -> dict[str, Any]:
    """
    Sweep every locker for abandoned sessions
    """
    expired = build_controller(db, gateway, clock).expire_stale()
    return {"expired_sessions": expired}
