from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from autolock.core.entities.session import ChargeStatus, LockerSession, SessionStatus


class SessionRepository(ABC):
    """
    Persistence port for locker sessions.

    Every state-advancing method is a single conditional write: it reports whether this caller won,
    and a lost race is never an error.
    """

    @abstractmethod
    def add_if_locker_free(self, session: LockerSession) -> bool:
        """Insert a new open session. Return False if the locker already has an open session."""
        raise NotImplementedError

    @abstractmethod
    def get(self, session_id: str) -> LockerSession | None:
        raise NotImplementedError

    @abstractmethod
    def find_open_by_locker(
        self, locker_id: str, statuses: Iterable[SessionStatus]
    ) -> LockerSession | None:
        """Most recent session of the locker whose status is in `statuses`."""
        raise NotImplementedError

    @abstractmethod
    def find_by_reference(self, payment_reference: str) -> LockerSession | None:
        raise NotImplementedError

    @abstractmethod
    def transition(
        self,
        session_id: str,
        *,
        from_statuses: Iterable[SessionStatus],
        to_status: SessionStatus,
        at: datetime,
        **changes: Any,
    ) -> bool:
        """
        UPDATE ... WHERE id = :session_id AND status IN (:from_statuses).
        Returns True if the row was updated by this call.
        """
        raise NotImplementedError

    @abstractmethod
    def record_final_charge(self, session_id: str, charge_status: ChargeStatus) -> None:
        """Flag the outcome of the closing charge of an ended session for reconciliation."""
        raise NotImplementedError

    @abstractmethod
    def claim_unlock_code(self, locker_id: str) -> str | None:
        """
        Hand over the pending unlock code of the locker's paid session, flipping otp_delivered and nulling
        otp_plain in the same conditional update. Only one concurrent caller ever receives the code.
        """
        raise NotImplementedError

    @abstractmethod
    def expire_stale(
        self,
        *,
        cutoffs: dict[SessionStatus, datetime],
        at: datetime,
        locker_id: str | None = None,
    ) -> int:
        """Move open sessions whose status_changed_at is older than their status cutoff to EXPIRED."""
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int) -> list[LockerSession]:
        raise NotImplementedError
