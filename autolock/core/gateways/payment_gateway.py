from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChargeOutcome(str, Enum):
    ACCEPTED = "accepted"
    # Push sent to the payer's phone; the real confirmation arrives later by webhook.
    PENDING_CONFIRMATION = "pending_confirmation"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class ChargeResult:
    outcome: ChargeOutcome
    reference: str
    message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def initiated(self) -> bool:
        """Accepted and pending-confirmation both count as a successfully requested charge."""
        return self.outcome is not ChargeOutcome.REJECTED


class PaymentGateway(ABC):
    """
    Mobile-money gateway port. Implementations never touch session state, they only report outcomes.
    """

    @abstractmethod
    def initiate_charge(self, phone: str, amount: int, reference: str) -> ChargeResult:
        raise NotImplementedError

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, signature: str | None) -> bool:
        """Authenticate an inbound webhook against the exact, unparsed request bytes."""
        raise NotImplementedError

    @abstractmethod
    def submit_charge_otp(self, otp: str, reference: str) -> ChargeResult:
        raise NotImplementedError

    @property
    def is_test_mode(self) -> bool:
        """Sandbox credentials; only then may clients drive the test-charge steps themselves."""
        return False
