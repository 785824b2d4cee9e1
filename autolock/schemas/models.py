from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Status(Enum):
    active = 'active'
    pending_payment = 'pending_payment'
    paid = 'paid'
    ended = 'ended'
    failed = 'failed'
    expired = 'expired'


class ChargeStatus(Enum):
    sent = 'sent'
    failed = 'failed'
    not_required = 'not_required'


class ChargeOutcome(Enum):
    accepted = 'accepted'
    pending_confirmation = 'pending_confirmation'
    rejected = 'rejected'


class StartSessionRequest(BaseModel):
    locker_id: str = Field(min_length=1, max_length=50)


class PrepaySessionRequest(BaseModel):
    locker_id: str = Field(min_length=1, max_length=50)
    phone: str = Field(min_length=9, max_length=20)


class StartSessionResponse(BaseModel):
    session_id: str
    status: Status
    reference: str | None = None
    message: str | None = None


class RetrieveSessionRequest(BaseModel):
    locker_id: str = Field(min_length=1, max_length=50)
    phone: str = Field(min_length=9, max_length=20)


class RetrieveSessionResponse(BaseModel):
    session_id: str
    minutes_used: int
    amount: int
    reference: str
    message: str


class EndSessionRequest(BaseModel):
    locker_id: str = Field(min_length=1, max_length=50)
    phone: str | None = Field(default=None, max_length=20)


class EndSessionResponse(BaseModel):
    session_id: str
    minutes_used: int
    amount_charged: int
    charge_status: ChargeStatus
    message: str


class PollStatusResponse(BaseModel):
    paid: bool
    otp: str | None = None


class WebhookAck(BaseModel):
    received: bool = True


class DashboardSession(BaseModel):
    id: str
    locker_id: str
    phone: str
    status: Status
    otp_delivered: bool
    amount_initial: int
    amount_final: int
    final_charge_status: ChargeStatus | None
    started_at: datetime | None
    ended_at: datetime | None
    created_at: datetime | None
    minutes_used: int
    current_cost: int


class Dashboard(BaseModel):
    count: int
    sessions: list[DashboardSession]


class SubmitChargeOtpRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=100)
    otp: str = Field(min_length=1, max_length=10)


class SubmitChargeOtpResponse(BaseModel):
    reference: str
    outcome: ChargeOutcome
    message: str
