from __future__ import annotations

import hashlib
import secrets


class OtpIssuer:
    """
    Mints short numeric unlock codes.

    The plain code is only kept until the device fetches it; the salted digest is the permanent audit
    record. Delivery bookkeeping belongs to the session life cycle, not to the issuer.
    """

    def __init__(self, *, secret: str, length: int = 4) -> None:
        if length < 1:
            raise ValueError("OTP length must be at least 1")
        self._secret = secret
        self._length = length

    @property
    def length(self) -> int:
        return self._length

    def generate(self) -> str:
        lower = 10 ** (self._length - 1)
        upper = 10 ** self._length
        return str(secrets.randbelow(upper - lower) + lower)

    def hash(self, code: str) -> str:
        raw = f"{code}{self._secret}".encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def verify(self, code: str, digest: str) -> bool:
        return secrets.compare_digest(self.hash(code), digest)
