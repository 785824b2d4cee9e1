from __future__ import annotations

from conftest import charge_success_body
from autolock.core.gateways.payment_gateway import ChargeOutcome


def test_store_flow_end_to_end(client, gateway, clock) -> None:
    res = client.post("/api/session/start", json={"locker_id": "A1"})
    assert res.status_code == 201
    first = res.json()
    assert first["status"] == "active"
    assert first["session_id"]

    conflict = client.post("/api/session/start", json={"locker_id": "A1"})
    assert conflict.status_code == 409
    assert conflict.json()["detail"] == "Locker already has an active session"

    clock.advance(seconds=125)
    end = client.post("/api/session/end", json={"locker_id": "A1", "phone": "0741535521"})
    assert end.status_code == 200
    body = end.json()
    assert body["session_id"] == first["session_id"]
    assert body["minutes_used"] == 3
    assert body["amount_charged"] == 15
    assert body["charge_status"] == "sent"

    again = client.post("/api/session/start", json={"locker_id": "A1"})
    assert again.status_code == 201
    assert again.json()["session_id"] != first["session_id"]


def test_prepay_flow_end_to_end(client, post_webhook) -> None:
    res = client.post("/api/session/prepay", json={"locker_id": "B2", "phone": "0741535521"})
    assert res.status_code == 201
    started = res.json()
    assert started["status"] == "pending_payment"
    assert "phone" in started["message"]

    assert client.get("/api/session/status/B2").json() == {"paid": False}

    assert post_webhook(charge_success_body(started["reference"])).status_code == 200

    first_poll = client.get("/api/session/status/B2")
    assert first_poll.status_code == 200
    payload = first_poll.json()
    assert payload["paid"] is True
    assert payload["otp"].isdigit() and len(payload["otp"]) == 4

    assert client.get("/api/session/status/B2").json() == {"paid": False}


def test_prepay_gateway_failure_returns_502_and_frees_locker(client, gateway) -> None:
    gateway.outcome = ChargeOutcome.REJECTED

    res = client.post("/api/session/prepay", json={"locker_id": "B2", "phone": "0741535521"})
    assert res.status_code == 502
    assert res.json()["detail"] == "Invalid phone number"

    assert client.post("/api/session/start", json={"locker_id": "B2"}).status_code == 201


def test_retrieve_flow(client, post_webhook, clock) -> None:
    client.post("/api/session/start", json={"locker_id": "C3"})
    clock.advance(minutes=9, seconds=30)

    res = client.post("/api/session/retrieve", json={"locker_id": "C3", "phone": "0741535521"})
    assert res.status_code == 200
    retrieval = res.json()
    assert retrieval["amount"] == 10
    assert retrieval["minutes_used"] == 10
    assert retrieval["message"] == "KES 10 for 10 min. Check phone to pay."

    post_webhook(charge_success_body(retrieval["reference"]))
    assert client.get("/api/session/status/C3").json()["paid"] is True

    end = client.post("/api/session/end", json={"locker_id": "C3"})
    assert end.json()["charge_status"] == "not_required"


def test_retrieve_unknown_locker_is_404(client) -> None:
    res = client.post("/api/session/retrieve", json={"locker_id": "nope", "phone": "0741535521"})
    assert res.status_code == 404


def test_end_unknown_locker_is_404(client) -> None:
    res = client.post("/api/session/end", json={"locker_id": "nope"})
    assert res.status_code == 404
    assert res.json()["detail"] == "No active session found for this locker"


def test_end_reports_failed_closing_charge(client, gateway, clock) -> None:
    client.post("/api/session/start", json={"locker_id": "A1"})
    gateway.outcome = ChargeOutcome.REJECTED
    clock.advance(seconds=61)

    res = client.post("/api/session/end", json={"locker_id": "A1", "phone": "0741535521"})

    assert res.status_code == 200
    body = res.json()
    assert body["charge_status"] == "failed"
    assert body["amount_charged"] == 10
    assert client.post("/api/session/start", json={"locker_id": "A1"}).status_code == 201


def test_request_validation(client) -> None:
    assert client.post("/api/session/start", json={}).status_code == 422
    assert client.post("/api/session/start", json={"locker_id": ""}).status_code == 422
    assert client.post("/api/session/prepay", json={"locker_id": "B2"}).status_code == 422
    assert client.post("/api/session/retrieve", json={"phone": "0741535521"}).status_code == 422


def test_dashboard_projection(client, post_webhook, clock) -> None:
    client.post("/api/session/start", json={"locker_id": "A1"})
    clock.advance(seconds=1)
    started = client.post("/api/session/prepay", json={"locker_id": "B2", "phone": "0741535521"}).json()
    post_webhook(charge_success_body(started["reference"]))
    clock.advance(seconds=1)
    client.post("/api/session/start", json={"locker_id": "D4"})
    clock.advance(minutes=2)
    client.post("/api/session/end", json={"locker_id": "D4", "phone": "0741535521"})

    res = client.get("/api/dashboard")
    assert res.status_code == 200
    dashboard = res.json()
    assert dashboard["count"] == 3

    by_locker = {row["locker_id"]: row for row in dashboard["sessions"]}
    assert [row["locker_id"] for row in dashboard["sessions"]] == ["D4", "B2", "A1"]

    active = by_locker["A1"]
    assert active["status"] == "active"
    assert active["minutes_used"] == 3
    assert active["current_cost"] == 15

    paid = by_locker["B2"]
    assert paid["status"] == "paid"
    assert paid["minutes_used"] == 0
    assert paid["otp_delivered"] is False
    assert "otp_plain" not in paid and "otp_hash" not in paid

    ended = by_locker["D4"]
    assert ended["status"] == "ended"
    assert ended["minutes_used"] == 2
    assert ended["current_cost"] == 10
    assert ended["final_charge_status"] == "sent"

    assert client.get("/api/dashboard", params={"limit": 1}).json()["count"] == 1
    assert client.get("/api/dashboard", params={"limit": 0}).status_code == 422


def test_submit_charge_otp(client) -> None:
    res = client.post("/api/payments/submit-otp", json={"reference": "ref-1", "otp": "123456"})
    assert res.status_code == 200
    assert res.json()["outcome"] == "accepted"
