from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from autolock.core.entities.session import LockerSession, SessionStatus
from autolock.core.repositories.session_repository import SessionRepository


@dataclass(frozen=True, slots=True)
class DashboardRowDTO:
    """
    Use-case return type for one row of GET /api/dashboard

    Note: unlock codes and their digests are never part of the read model.
    """
    id: str
    locker_id: str
    phone: str
    status: SessionStatus
    otp_delivered: bool
    amount_initial: int
    amount_final: int
    final_charge_status: str | None
    started_at: datetime | None
    ended_at: datetime | None
    created_at: datetime | None
    minutes_used: int
    current_cost: int


class GetDashboardUseCase:
    def __init__(self, *, session_repo: SessionRepository, rate_per_minute: int) -> None:
        self._session_repo = session_repo
        self._rate_per_minute = rate_per_minute

    def execute(self, *, now: datetime, limit: int = 100) -> list[DashboardRowDTO]:
        return [self._to_row(session, now) for session in self._session_repo.list_recent(limit)]

    def _to_row(self, session: LockerSession, now: datetime) -> DashboardRowDTO:
        if session.status is SessionStatus.ACTIVE or (
            session.status is SessionStatus.ENDED and session.ended_at is not None
        ):
            minutes_used = session.minutes_used(now)
        else:
            minutes_used = 0

        if session.status is SessionStatus.ACTIVE:
            current_cost = minutes_used * self._rate_per_minute
        else:
            current_cost = session.amount_final

        return DashboardRowDTO(
            id=session.id,
            locker_id=session.locker_id,
            phone=session.phone,
            status=session.status,
            otp_delivered=session.otp_delivered,
            amount_initial=session.amount_initial,
            amount_final=session.amount_final,
            final_charge_status=session.final_charge_status.value if session.final_charge_status else None,
            started_at=session.started_at,
            ended_at=session.ended_at,
            created_at=session.created_at,
            minutes_used=minutes_used,
            current_cost=current_cost,
        )
