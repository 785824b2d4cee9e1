from __future__ import annotations

import pytest

from autolock.core.services.otp_issuer import OtpIssuer


def test_generated_codes_are_numeric_and_fixed_length() -> None:
    issuer = OtpIssuer(secret="s", length=4)
    codes = {issuer.generate() for _ in range(200)}

    assert all(len(code) == 4 and code.isdigit() for code in codes)
    assert all(not code.startswith("0") for code in codes)
    # 200 draws out of 9000 values: a constant generator would collapse to one code
    assert len(codes) > 1


def test_configurable_length() -> None:
    assert len(OtpIssuer(secret="s", length=6).generate()) == 6


def test_zero_length_is_rejected() -> None:
    with pytest.raises(ValueError):
        OtpIssuer(secret="s", length=0)


def test_hash_is_deterministic_and_bound_to_the_secret() -> None:
    first = OtpIssuer(secret="one")
    second = OtpIssuer(secret="two")

    assert first.hash("1234") == first.hash("1234")
    assert first.hash("1234") != first.hash("1235")
    assert first.hash("1234") != second.hash("1234")
    assert len(first.hash("1234")) == 64


def test_verify_against_stored_digest() -> None:
    issuer = OtpIssuer(secret="s")
    digest = issuer.hash("4821")

    assert issuer.verify("4821", digest)
    assert not issuer.verify("4822", digest)
