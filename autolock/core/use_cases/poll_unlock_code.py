from __future__ import annotations

from dataclasses import dataclass

from autolock.core.use_cases.session_lifecycle import SessionLifecycleController


@dataclass(frozen=True, slots=True)
class PollResult:
    """
    Use-case return type for GET /api/session/status/{locker_id}

    `otp` is only ever set on the single poll that won the delivery.
    """
    paid: bool
    otp: str | None = None


class PollUnlockCodeUseCase:
    def __init__(self, *, controller: SessionLifecycleController) -> None:
        self._controller = controller

    def execute(self, *, locker_id: str) -> PollResult:
        code = self._controller.deliver_unlock_code(locker_id)
        if code is None:
            return PollResult(paid=False)
        return PollResult(paid=True, otp=code)
