from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autolock.core.entities.session import OPEN_STATUSES, ChargeStatus, LockerSession, SessionStatus
from autolock.core.repositories.session_repository import SessionRepository
from autolock.infrastructure.models.models import SessionModel


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SessionRepositoryImpl(SessionRepository):
    """
    SQLAlchemy implementation for LockerSession persistence.

    Writes that advance a session are issued as Core UPDATE statements qualified by the expected
    pre-state; the affected row count decides who won a race.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def add_if_locker_free(self, session: LockerSession) -> bool:
        row = SessionModel(
            id=session.id,
            locker_id=session.locker_id,
            phone=session.phone,
            status=session.status,
            otp_hash=session.otp_hash,
            otp_plain=session.otp_plain,
            otp_delivered=session.otp_delivered,
            payment_reference=session.payment_reference,
            amount_initial=session.amount_initial,
            amount_final=session.amount_final,
            final_charge_status=session.final_charge_status,
            started_at=session.started_at,
            ended_at=session.ended_at,
            created_at=session.created_at,
            status_changed_at=session.status_changed_at or session.created_at,
        )
        self._db.add(row)
        try:
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            return False
        return True

    def get(self, session_id: str) -> LockerSession | None:
        row = self._db.get(SessionModel, session_id, populate_existing=True)
        if row is None:
            return None
        return self._to_entity(row)

    def find_open_by_locker(
        self, locker_id: str, statuses: Iterable[SessionStatus]
    ) -> LockerSession | None:
        stmt = (
            select(SessionModel)
            .where(SessionModel.locker_id == locker_id)
            .where(SessionModel.status.in_(list(statuses)))
            .order_by(SessionModel.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = self._db.scalars(stmt).first()
        if row is None:
            return None
        return self._to_entity(row)

    def find_by_reference(self, payment_reference: str) -> LockerSession | None:
        stmt = (
            select(SessionModel)
            .where(SessionModel.payment_reference == payment_reference)
            .execution_options(populate_existing=True)
        )
        row = self._db.scalars(stmt).first()
        if row is None:
            return None
        return self._to_entity(row)

    def transition(
        self,
        session_id: str,
        *,
        from_statuses: Iterable[SessionStatus],
        to_status: SessionStatus,
        at: datetime,
        **changes: Any,
    ) -> bool:
        stmt = (
            update(SessionModel)
            .where(SessionModel.id == session_id)
            .where(SessionModel.status.in_(list(from_statuses)))
            .values(status=to_status, status_changed_at=at, **changes)
            .execution_options(synchronize_session=False)
        )
        result = self._db.execute(stmt)
        self._db.commit()
        return result.rowcount == 1

    def record_final_charge(self, session_id: str, charge_status: ChargeStatus) -> None:
        self._db.execute(
            update(SessionModel)
            .where(SessionModel.id == session_id)
            .where(SessionModel.status == SessionStatus.ENDED)
            .values(final_charge_status=charge_status)
            .execution_options(synchronize_session=False)
        )
        self._db.commit()

    def claim_unlock_code(self, locker_id: str) -> str | None:
        candidate = self._db.execute(
            select(SessionModel.id, SessionModel.otp_plain)
            .where(SessionModel.locker_id == locker_id)
            .where(SessionModel.status == SessionStatus.PAID)
            .where(SessionModel.otp_delivered.is_(False))
            .where(SessionModel.otp_plain.is_not(None))
            .order_by(SessionModel.created_at.desc())
            .limit(1)
        ).first()
        if candidate is None:
            self._db.rollback()
            return None

        # Only the caller whose update flips the flag gets to hand out the code it read.
        result = self._db.execute(
            update(SessionModel)
            .where(SessionModel.id == candidate.id)
            .where(SessionModel.status == SessionStatus.PAID)
            .where(SessionModel.otp_delivered.is_(False))
            .where(SessionModel.otp_plain.is_not(None))
            .values(otp_delivered=True, otp_plain=None)
            .execution_options(synchronize_session=False)
        )
        self._db.commit()
        if result.rowcount != 1:
            return None
        return candidate.otp_plain

    def expire_stale(
        self,
        *,
        cutoffs: dict[SessionStatus, datetime],
        at: datetime,
        locker_id: str | None = None,
    ) -> int:
        unknown = set(cutoffs) - OPEN_STATUSES
        if unknown:
            raise ValueError(f"Only open sessions can expire, got: {sorted(s.value for s in unknown)}")
        if not cutoffs:
            return 0

        stale = or_(
            *(
                and_(SessionModel.status == status, SessionModel.status_changed_at < cutoff)
                for status, cutoff in cutoffs.items()
            )
        )
        stmt = (
            update(SessionModel)
            .where(stale)
            .values(status=SessionStatus.EXPIRED, status_changed_at=at, otp_plain=None)
            .execution_options(synchronize_session=False)
        )
        if locker_id is not None:
            stmt = stmt.where(SessionModel.locker_id == locker_id)

        result = self._db.execute(stmt)
        self._db.commit()
        return result.rowcount

    def list_recent(self, limit: int) -> list[LockerSession]:
        stmt = (
            select(SessionModel)
            .order_by(SessionModel.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(row) for row in self._db.scalars(stmt)]

    @staticmethod
    def _to_entity(row: SessionModel) -> LockerSession:
        return LockerSession(
            id=row.id,
            locker_id=row.locker_id,
            status=SessionStatus(row.status),
            phone=row.phone or "",
            otp_hash=row.otp_hash,
            otp_plain=row.otp_plain,
            otp_delivered=bool(row.otp_delivered),
            payment_reference=row.payment_reference,
            amount_initial=row.amount_initial or 0,
            amount_final=row.amount_final or 0,
            final_charge_status=row.final_charge_status,
            started_at=_as_utc(row.started_at),
            ended_at=_as_utc(row.ended_at),
            created_at=_as_utc(row.created_at),
            status_changed_at=_as_utc(row.status_changed_at),
        )
