from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import uuid4

from autolock.core.entities.session import (
    OPEN_STATUSES,
    ChargeStatus,
    LockerSession,
    SessionStatus,
)
from autolock.core.gateways.payment_gateway import ChargeOutcome, ChargeResult, PaymentGateway
from autolock.core.repositories.session_repository import SessionRepository
from autolock.core.services.otp_issuer import OtpIssuer

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Statuses a session may be paid from by a charge.success webhook.
PAYABLE_STATUSES: tuple[SessionStatus, ...] = (SessionStatus.PENDING_PAYMENT, SessionStatus.ACTIVE)
RETRIEVABLE_STATUSES: tuple[SessionStatus, ...] = (SessionStatus.ACTIVE, SessionStatus.PENDING_PAYMENT)


class LockerOccupiedError(Exception):
    """Raise to map to HTTP 409."""


class SessionNotFoundError(Exception):
    """Raise to map to HTTP 404."""


class GatewayRejectedError(Exception):
    """Raise to map to HTTP 502 (charge could not be initiated)."""

    def __init__(self, message: str, *, session_id: str, reference: str) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.reference = reference


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_payment_reference(kind: str, locker_id: str, now: datetime) -> str:
    return f"autolock_{kind}_{locker_id}_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


@dataclass(frozen=True, slots=True)
class LifecycleConfig:
    """Billing and staleness knobs, amounts in whole currency units."""
    rate_per_minute: int = 5
    retrieve_flat_rate: int = 10
    prepay_amount: int = 10
    pending_payment_ttl: timedelta = timedelta(minutes=10)
    paid_ttl: timedelta = timedelta(hours=1)
    active_ttl: timedelta | None = timedelta(days=7)

    def amount_for(self, minutes: int) -> int:
        return minutes * self.rate_per_minute


@dataclass(frozen=True, slots=True)
class StartResult:
    session_id: str
    status: SessionStatus
    reference: str | None = None


@dataclass(frozen=True, slots=True)
class RetrieveResult:
    session_id: str
    minutes_used: int
    amount: int
    reference: str


@dataclass(frozen=True, slots=True)
class EndResult:
    session_id: str
    minutes_used: int
    amount_charged: int
    charge_status: ChargeStatus


class SessionLifecycleController:
    """
    The locker session state machine.

    Every transition is a single status-qualified write on the session row, so concurrent callers
    (HTTP client, payment webhook, polling device) never need a lock: whoever's conditional update hits
    the row wins, everybody else sees "not ready" or "already processed".

        (none) -> active | pending_payment
        active | pending_payment -> pending_payment   (retrieve)
        pending_payment | active -> paid              (charge.success)
        active | pending_payment | paid -> ended | expired
        pending_payment -> failed                     (charge could not be initiated)
    """

    def __init__(
        self,
        *,
        session_repo: SessionRepository,
        gateway: PaymentGateway,
        otp_issuer: OtpIssuer,
        config: LifecycleConfig,
        clock: Clock = utcnow,
    ) -> None:
        self._session_repo = session_repo
        self._gateway = gateway
        self._otp_issuer = otp_issuer
        self._config = config
        self._clock = clock

    @property
    def config(self) -> LifecycleConfig:
        return self._config

    # -----------------------------
    # Start
    # -----------------------------
    def start_store(self, locker_id: str) -> StartResult:
        """Goods go in first, the billing clock starts now and nothing is charged yet."""
        now = self._clock()
        self.expire_stale(locker_id=locker_id)

        session = LockerSession(
            id=str(uuid4()),
            locker_id=locker_id,
            status=SessionStatus.ACTIVE,
            started_at=now,
            created_at=now,
            status_changed_at=now,
        )
        self._insert_or_conflict(session)
        logger.info("Session %s started on locker %s (store)", session.id, locker_id)
        return StartResult(session_id=session.id, status=session.status)

    def start_prepay(self, locker_id: str, phone: str) -> StartResult:
        """Pay first: the session waits in pending_payment until the gateway confirms the charge."""
        now = self._clock()
        self.expire_stale(locker_id=locker_id)

        reference = new_payment_reference("pre", locker_id, now)
        session = LockerSession(
            id=str(uuid4()),
            locker_id=locker_id,
            status=SessionStatus.PENDING_PAYMENT,
            phone=phone,
            payment_reference=reference,
            amount_initial=self._config.prepay_amount,
            started_at=now,
            created_at=now,
            status_changed_at=now,
        )
        # The row (and its reference) exists before the charge so that an early webhook can match it.
        self._insert_or_conflict(session)

        try:
            charge = self._gateway.initiate_charge(phone, self._config.prepay_amount, reference)
        except Exception:
            self._mark_failed(session.id)
            raise

        if not charge.initiated:
            self._mark_failed(session.id)
            raise GatewayRejectedError(
                charge.message or "Payment failed",
                session_id=session.id,
                reference=reference,
            )

        logger.info("Session %s started on locker %s (prepay, reference=%s)", session.id, locker_id, reference)
        return StartResult(session_id=session.id, status=session.status, reference=reference)

    # -----------------------------
    # Retrieve
    # -----------------------------
    def retrieve(self, locker_id: str, phone: str) -> RetrieveResult:
        """
        Request the flat retrieval fee. A rejected charge leaves the session in pending_payment: the goods
        are still inside, so the locker must stay taken and the payer may simply retry.
        """
        now = self._clock()
        session = self._session_repo.find_open_by_locker(locker_id, RETRIEVABLE_STATUSES)
        if session is None:
            raise SessionNotFoundError("No active session for this locker")

        minutes_used = session.minutes_used(now)
        amount = self._config.retrieve_flat_rate
        reference = new_payment_reference("ret", locker_id, now)

        moved = self._session_repo.transition(
            session.id,
            from_statuses=(session.status,),
            to_status=SessionStatus.PENDING_PAYMENT,
            at=now,
            phone=phone,
            payment_reference=reference,
            amount_final=amount,
        )
        if not moved:
            raise SessionNotFoundError("No active session for this locker")

        charge = self._gateway.initiate_charge(phone, amount, reference)
        if not charge.initiated:
            raise GatewayRejectedError(
                charge.message or "Payment failed",
                session_id=session.id,
                reference=reference,
            )

        logger.info(
            "Retrieval charge requested for session %s: %s min, amount=%s, reference=%s",
            session.id, minutes_used, amount, reference,
        )
        return RetrieveResult(session_id=session.id, minutes_used=minutes_used, amount=amount, reference=reference)

    # -----------------------------
    # Webhook / poll
    # -----------------------------
    def confirm_payment(self, reference: str) -> bool:
        """
        Apply a settled charge. Returns True only for the call that moved the session to paid; duplicate,
        late or unmatched confirmations return False and change nothing.
        """
        session = self._session_repo.find_by_reference(reference)
        if session is None:
            logger.warning("No session found for payment reference %s", reference)
            return False
        if session.status not in PAYABLE_STATUSES:
            logger.info("Session %s already processed (status: %s)", session.id, session.status.value)
            return False

        code = self._otp_issuer.generate()
        moved = self._session_repo.transition(
            session.id,
            from_statuses=PAYABLE_STATUSES,
            to_status=SessionStatus.PAID,
            at=self._clock(),
            otp_hash=self._otp_issuer.hash(code),
            otp_plain=code,
            otp_delivered=False,
        )
        if moved:
            logger.info("Session %s paid (reference=%s), unlock code issued", session.id, reference)
        else:
            logger.info("Session %s was advanced concurrently, confirmation ignored", session.id)
        return moved

    def deliver_unlock_code(self, locker_id: str) -> str | None:
        code = self._session_repo.claim_unlock_code(locker_id)
        if code is not None:
            logger.info("Unlock code delivered for locker %s", locker_id)
        return code

    # -----------------------------
    # End
    # -----------------------------
    def end(self, locker_id: str, phone: str | None = None) -> EndResult:
        """
        Close the locker's open session and bill the elapsed time.

        The session is ended before the closing charge is requested, so a concurrent second `end` can
        never charge twice. A charge that cannot be initiated is flagged on the session, the locker is
        released either way.
        """
        now = self._clock()
        session = self._session_repo.find_open_by_locker(locker_id, OPEN_STATUSES)
        if session is None:
            raise SessionNotFoundError("No active session found for this locker")

        minutes_used = session.minutes_used(now)
        payer = phone or session.phone

        if session.amount_final > 0:
            # Retrieval already requested its own charge under the current reference. Only a confirmed
            # one settles the bill, an unconfirmed one goes to reconciliation instead of a second push.
            amount = session.amount_final
            reference = session.payment_reference
            if session.status is SessionStatus.PAID:
                charge_status: ChargeStatus | None = ChargeStatus.NOT_REQUIRED
            else:
                charge_status = ChargeStatus.FAILED
        else:
            amount = self._config.amount_for(minutes_used)
            reference = new_payment_reference("end", locker_id, now)
            charge_status = None if payer else ChargeStatus.FAILED

        moved = self._session_repo.transition(
            session.id,
            from_statuses=OPEN_STATUSES,
            to_status=SessionStatus.ENDED,
            at=now,
            ended_at=now,
            phone=payer,
            payment_reference=reference,
            amount_final=amount,
            final_charge_status=charge_status,
            otp_plain=None,
        )
        if not moved:
            raise SessionNotFoundError("No active session found for this locker")

        logger.info("Session %s ended on locker %s: %s min, amount=%s", session.id, locker_id, minutes_used, amount)

        if charge_status is None:
            charge = self._closing_charge(payer, amount, reference)
            charge_status = ChargeStatus.SENT if charge.initiated else ChargeStatus.FAILED
            self._session_repo.record_final_charge(session.id, charge_status)
        if charge_status is ChargeStatus.FAILED:
            logger.warning(
                "Closing charge for session %s failed, flagged for reconciliation (amount=%s, reference=%s)",
                session.id, amount, reference,
            )

        return EndResult(
            session_id=session.id,
            minutes_used=minutes_used,
            amount_charged=amount,
            charge_status=charge_status,
        )

    # -----------------------------
    # Staleness
    # -----------------------------
    def expire_stale(self, *, locker_id: str | None = None) -> int:
        """Reclaim abandoned sessions so their locker becomes available again."""
        now = self._clock()
        cutoffs = {
            SessionStatus.PENDING_PAYMENT: now - self._config.pending_payment_ttl,
            SessionStatus.PAID: now - self._config.paid_ttl,
        }
        if self._config.active_ttl is not None:
            cutoffs[SessionStatus.ACTIVE] = now - self._config.active_ttl

        expired = self._session_repo.expire_stale(cutoffs=cutoffs, at=now, locker_id=locker_id)
        if expired:
            logger.info("Expired %s stale session(s)%s", expired, f" on locker {locker_id}" if locker_id else "")
        return expired

    # -----------------------------
    # Internal helpers
    # -----------------------------
    def _insert_or_conflict(self, session: LockerSession) -> None:
        if not self._session_repo.add_if_locker_free(session):
            logger.info("Locker %s already has an active session", session.locker_id)
            raise LockerOccupiedError("Locker already has an active session")

    def _mark_failed(self, session_id: str) -> None:
        self._session_repo.transition(
            session_id,
            from_statuses=(SessionStatus.PENDING_PAYMENT,),
            to_status=SessionStatus.FAILED,
            at=self._clock(),
        )
        logger.warning("Session %s failed: charge could not be initiated", session_id)

    def _closing_charge(self, phone: str, amount: int, reference: str) -> ChargeResult:
        # The session is already ended at this point, the charge outcome is only a reconciliation flag.
        try:
            return self._gateway.initiate_charge(phone, amount, reference)
        except Exception:
            logger.exception("Closing charge %s raised", reference)
            return ChargeResult(outcome=ChargeOutcome.REJECTED, reference=reference, message="Charge error")
