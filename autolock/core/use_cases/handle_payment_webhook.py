from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from autolock.core.gateways.payment_gateway import PaymentGateway
from autolock.core.use_cases.session_lifecycle import SessionLifecycleController

logger = logging.getLogger(__name__)
fault_logger = logging.getLogger("autolock.faults")

CHARGE_SUCCESS = "charge.success"


class InvalidSignatureError(Exception):
    """Raise to map to HTTP 401."""


@dataclass(frozen=True, slots=True)
class WebhookResult:
    event: str | None
    applied: bool


class HandlePaymentWebhookUseCase:
    """
    Gateway-facing entry point.

    Authenticity is checked on the raw bytes before anything is parsed. Past that point every delivery is
    acknowledged, whether it was applied, stale, duplicated, unknown or broken, so the gateway never
    retries into a storm; faults only go to the operator log.
    """

    def __init__(self, *, gateway: PaymentGateway, controller: SessionLifecycleController) -> None:
        self._gateway = gateway
        self._controller = controller

    def execute(self, *, raw_body: bytes, signature: str | None) -> WebhookResult:
        if not self._gateway.verify_webhook(raw_body, signature):
            logger.warning("Invalid webhook signature, rejecting")
            raise InvalidSignatureError("Invalid signature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            fault_logger.error("Signed webhook body is not valid JSON (%d bytes)", len(raw_body))
            return WebhookResult(event=None, applied=False)

        if not isinstance(event, dict):
            fault_logger.error("Signed webhook body is not a JSON object")
            return WebhookResult(event=None, applied=False)

        event_type = event.get("event")
        logger.info("Received webhook event: %s", event_type)
        if event_type != CHARGE_SUCCESS:
            return WebhookResult(event=event_type, applied=False)

        data = event.get("data") or {}
        reference = data.get("reference") if isinstance(data, dict) else None
        if not isinstance(reference, str) or not reference:
            fault_logger.error("charge.success webhook without a reference")
            return WebhookResult(event=event_type, applied=False)

        try:
            applied = self._controller.confirm_payment(reference)
        except Exception:
            fault_logger.exception("Failed to apply charge.success for reference %s", reference)
            return WebhookResult(event=event_type, applied=False)

        return WebhookResult(event=event_type, applied=applied)
