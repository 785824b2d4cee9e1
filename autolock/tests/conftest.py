from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from starlette.testclient import TestClient

from autolock.core.gateways.payment_gateway import ChargeOutcome, ChargeResult
from autolock.core.services.otp_issuer import OtpIssuer
from autolock.core.use_cases.session_lifecycle import LifecycleConfig, SessionLifecycleController
from autolock.infrastructure.database import Base, build_engine
from autolock.infrastructure.gateways.paystack_gateway import PaystackGateway
from autolock.infrastructure.models.models import SessionModel  # noqa: F401
from autolock.infrastructure.repositories.session_repository_impl import SessionRepositoryImpl

WEBHOOK_SECRET = "sk_test_webhook-secret"
T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


class FakePaymentGateway(PaystackGateway):
    """
    Real Paystack signature checks, scripted charge outcomes (no network).
    """

    def __init__(self, *, outcome: ChargeOutcome = ChargeOutcome.PENDING_CONFIRMATION) -> None:
        super().__init__(secret_key=WEBHOOK_SECRET)
        self.outcome = outcome
        self.error: Exception | None = None
        self.charges: list[tuple[str, int, str]] = []

    def initiate_charge(self, phone: str, amount: int, reference: str) -> ChargeResult:
        self.charges.append((phone, amount, reference))
        if self.error is not None:
            raise self.error
        message = {
            ChargeOutcome.ACCEPTED: "Charge successful",
            ChargeOutcome.PENDING_CONFIRMATION: "Charge attempted",
            ChargeOutcome.REJECTED: "Invalid phone number",
        }[self.outcome]
        return ChargeResult(outcome=self.outcome, reference=reference, message=message)

    def submit_charge_otp(self, otp: str, reference: str) -> ChargeResult:
        outcome = ChargeOutcome.ACCEPTED if otp == "123456" else ChargeOutcome.REJECTED
        return ChargeResult(outcome=outcome, reference=reference, message="Charge attempted")


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def sign(raw_body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def charge_success_body(reference: str, **data: Any) -> bytes:
    return json.dumps({"event": "charge.success", "data": {"reference": reference, "status": "success", **data}}).encode()


@pytest.fixture()
def engine() -> Engine:
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine)


@pytest.fixture()
def db(session_factory: sessionmaker) -> Session:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config() -> LifecycleConfig:
    return LifecycleConfig(
        rate_per_minute=5,
        retrieve_flat_rate=10,
        prepay_amount=10,
        pending_payment_ttl=timedelta(minutes=10),
        paid_ttl=timedelta(hours=1),
        active_ttl=timedelta(days=7),
    )


@pytest.fixture()
def otp_issuer() -> OtpIssuer:
    return OtpIssuer(secret="test-otp-secret", length=4)


@pytest.fixture()
def repo(db: Session) -> SessionRepositoryImpl:
    return SessionRepositoryImpl(db)


@pytest.fixture()
def controller(
    repo: SessionRepositoryImpl,
    gateway: FakePaymentGateway,
    otp_issuer: OtpIssuer,
    config: LifecycleConfig,
    clock: FakeClock,
) -> SessionLifecycleController:
    return SessionLifecycleController(
        session_repo=repo,
        gateway=gateway,
        otp_issuer=otp_issuer,
        config=config,
        clock=clock,
    )


@pytest.fixture()
def client(session_factory: sessionmaker, gateway: FakePaymentGateway, clock: FakeClock) -> TestClient:
    """
    The real app wired to an isolated in-memory database, the fake gateway and the controllable clock.
    """
    from autolock.main import app
    from autolock.presentation import routers

    def _override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[routers.get_db] = _override_get_db
    app.dependency_overrides[routers.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[routers.get_clock] = lambda: clock
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def post_webhook(client: TestClient) -> Callable[..., Any]:
    def _post(raw_body: bytes, signature: str | None = "sign"):
        headers = {"Content-Type": "application/json"}
        if signature == "sign":
            signature = sign(raw_body)
        if signature is not None:
            headers["x-paystack-signature"] = signature
        return client.post("/api/webhook/paystack", content=raw_body, headers=headers)

    return _post
