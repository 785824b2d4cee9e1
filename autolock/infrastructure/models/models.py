from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from autolock.core.entities.session import OPEN_STATUSES, ChargeStatus, SessionStatus
from autolock.infrastructure.database import Base


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


_OPEN_STATUS_PREDICATE = text(
    "status IN (" + ", ".join(f"'{s.value}'" for s in sorted(OPEN_STATUSES, key=lambda s: s.value)) + ")"
)


class SessionModel(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        # At most one open session per locker, enforced by the engine rather than a read-then-insert.
        Index(
            "uq_sessions_open_locker",
            "locker_id",
            unique=True,
            sqlite_where=_OPEN_STATUS_PREDICATE,
            postgresql_where=_OPEN_STATUS_PREDICATE,
        ),
        Index("idx_sessions_locker_status", "locker_id", "status"),
        Index("idx_sessions_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    locker_id: Mapped[str] = mapped_column(String(50), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
    )

    # otp_plain is nulled on first delivery to the device, otp_hash stays as the audit record
    otp_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    otp_plain: Mapped[str | None] = mapped_column(String(10), nullable=True)
    otp_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    amount_initial: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_final: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_charge_status: Mapped[ChargeStatus | None] = mapped_column(
        Enum(ChargeStatus, native_enum=False, length=20, values_callable=_enum_values),
        nullable=True,
    )

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
