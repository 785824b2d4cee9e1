from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    ENDED = "ended"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES


class ChargeStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    NOT_REQUIRED = "not_required"


# A locker is occupied while one of its sessions is in any of these.
OPEN_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.ACTIVE, SessionStatus.PENDING_PAYMENT, SessionStatus.PAID}
)
TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.ENDED, SessionStatus.FAILED, SessionStatus.EXPIRED}
)


def billable_minutes(started_at: datetime, until: datetime) -> int:
    """Elapsed time rounded up to whole minutes, never less than one."""
    elapsed = (until - started_at).total_seconds()
    return max(1, math.ceil(elapsed / 60))


@dataclass(slots=True)
class LockerSession:
    """
    One occupancy episode of a locker. Rows are never deleted, terminal sessions are kept as the audit trail.
    """
    id: str
    locker_id: str
    status: SessionStatus
    phone: str = ""
    otp_hash: str | None = None
    otp_plain: str | None = None
    otp_delivered: bool = False
    payment_reference: str | None = None
    amount_initial: int = 0
    amount_final: int = 0
    final_charge_status: ChargeStatus | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime | None = None
    status_changed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    def minutes_used(self, now: datetime) -> int:
        if self.started_at is None:
            return 0
        return billable_minutes(self.started_at, self.ended_at or now)
