from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import requests

from autolock.core.gateways.payment_gateway import ChargeOutcome, ChargeResult, PaymentGateway

logger = logging.getLogger(__name__)

# Paystack answers an M-Pesa STK push with these while the payer has not confirmed yet.
PENDING_MESSAGES = frozenset({"Charge attempted"})
PENDING_STATUSES = frozenset({"send_otp", "pay_offline", "pending"})


def format_phone(phone: str) -> str:
    """
    Normalize a Kenyan number to the +254 form Paystack requires for M-Pesa.

      "0741535521"    -> "+254741535521"
      "254741535521"  -> "+254741535521"
      "+254741535521" -> "+254741535521"
    """
    cleaned = "".join(ch for ch in (phone or "") if ch not in " -")
    if cleaned.startswith("+254"):
        return cleaned
    if cleaned.startswith("254"):
        return "+" + cleaned
    if cleaned.startswith("0"):
        return "+254" + cleaned[1:]
    return "+254" + cleaned


class PaystackGateway(PaymentGateway):
    """Paystack Charge API, mobile money (M-Pesa Kenya)."""

    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        currency: str = "KES",
        email_domain: str = "autolock-storage.com",
    ) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._currency = currency
        self._email_domain = email_domain

    @property
    def is_test_mode(self) -> bool:
        return self._secret_key.startswith("sk_test_")

    def placeholder_email(self, phone: str) -> str:
        # Paystack insists on an email even though M-Pesa payers only have a phone number.
        return f"{format_phone(phone).lstrip('+')}@{self._email_domain}"

    def initiate_charge(self, phone: str, amount: int, reference: str) -> ChargeResult:
        formatted_phone = format_phone(phone)
        body = {
            "email": self.placeholder_email(phone),
            "amount": amount * 100,
            "currency": self._currency,
            "reference": reference,
            "mobile_money": {"phone": formatted_phone, "provider": "mpesa"},
            "metadata": {
                "custom_fields": [
                    {"display_name": "Service", "variable_name": "service", "value": "AutoLock Storage"},
                ],
            },
        }
        logger.info(
            "Initiating M-Pesa charge: phone=%s amount=%s %s reference=%s",
            formatted_phone, amount, self._currency, reference,
        )

        data = self._post("/charge", body)
        if data is None:
            return ChargeResult(outcome=ChargeOutcome.REJECTED, reference=reference, message="Gateway unreachable")

        result = ChargeResult(
            outcome=self._classify(data),
            reference=self._reference_of(data, reference),
            message=str(data.get("message") or ""),
            raw=data,
        )
        logger.info("Charge %s: outcome=%s message=%r", result.reference, result.outcome.value, result.message)
        return result

    def submit_charge_otp(self, otp: str, reference: str) -> ChargeResult:
        """Complete a test-mode charge; live M-Pesa charges are confirmed on the phone instead."""
        logger.info("Submitting charge OTP for reference=%s", reference)

        data = self._post("/charge/submit_otp", {"otp": otp, "reference": reference})
        if data is None:
            return ChargeResult(outcome=ChargeOutcome.REJECTED, reference=reference, message="Gateway unreachable")

        payload = data.get("data") or {}
        if payload.get("status") == "success":
            outcome = ChargeOutcome.ACCEPTED
        else:
            outcome = self._classify(data)

        return ChargeResult(
            outcome=outcome,
            reference=self._reference_of(data, reference),
            message=str(data.get("message") or ""),
            raw=data,
        )

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        expected = hmac.new(self._secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))

    # -----------------------------
    # Internal helpers
    # -----------------------------
    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any] | None:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = requests.post(f"{self._base_url}{path}", json=body, headers=headers, timeout=self._timeout)
            data = resp.json()
        except requests.RequestException as e:
            logger.warning("Paystack %s request failed: %s", path, e)
            return None
        except ValueError:
            logger.warning("Paystack %s returned a non-JSON body: status=%s", path, resp.status_code)
            return None

        if not isinstance(data, dict):
            logger.warning("Paystack %s returned an unexpected body: %r", path, data)
            return None
        return data

    @staticmethod
    def _classify(data: dict[str, Any]) -> ChargeOutcome:
        payload = data.get("data") or {}
        if data.get("message") in PENDING_MESSAGES or payload.get("status") in PENDING_STATUSES:
            return ChargeOutcome.PENDING_CONFIRMATION
        if data.get("status") is True:
            return ChargeOutcome.ACCEPTED
        return ChargeOutcome.REJECTED

    @staticmethod
    def _reference_of(data: dict[str, Any], fallback: str) -> str:
        payload = data.get("data") or {}
        return str(payload.get("reference") or fallback)
