import os
import sqlite3
import sys
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from barbermatch.main import app
from barbermatch.services.request_orchestrator import orchestrator

client = TestClient(app)


def _login(user_id: str, role: str = "customer") -> str:
    response = client.post("/auth/login", json={"user_id": user_id, "role": role, "password": "barbermatch-demo"})
    assert response.status_code == 200
    return response.json()["access_token"]


def _create_request(customer_id: str) -> dict:
    response = client.post(
        "/requests",
        json={
            "customer_id": customer_id,
            "service_ids": ["haircut"],
            "location": {"latitude": 32.0853, "longitude": 34.7818},
            "address": "12 Dizengoff St, Tel Aviv",
        },
    )
    assert response.status_code == 200
    return response.json()


def _respond(request_id: str, barber_id: str, price: float = 80) -> dict:
    response = client.post(
        f"/requests/{request_id}/responses",
        json={"barber_id": barber_id, "proposed_price": price, "eta_minutes": 12},
    )
    assert response.status_code == 200
    return response.json()


def test_health_ok():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ready_reports_database():
    response = client.get("/ready")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["database"] == orchestrator.store.db_path
    assert payload["expiry_sweep_enabled"] is False


def test_auth_login_and_me():
    token = _login("barber_auth", role="barber")
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json() == {"user_id": "barber_auth", "role": "barber"}


def test_auth_rejects_bad_password_and_missing_token():
    response = client.post("/auth/login", json={"user_id": "u1", "password": "wrong"})
    assert response.status_code == 401
    assert client.get("/auth/me").status_code == 401


def test_token_user_must_match_actor():
    token = _login(f"cust_{uuid4().hex[:8]}")
    response = client.post(
        "/requests",
        json={
            "customer_id": "someone_else",
            "service_ids": ["haircut"],
            "location": {"latitude": 32.0853, "longitude": 34.7818},
            "address": "12 Dizengoff St",
        },
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 403


def test_create_request_validation_maps_to_400():
    response = client.post(
        "/requests",
        json={
            "customer_id": "cust_v",
            "service_ids": [],
            "location": {"latitude": 32.0853, "longitude": 34.7818},
            "address": "12 Dizengoff St",
        },
    )
    assert response.status_code == 400


def test_unknown_request_is_404():
    assert client.get("/requests/req_missing").status_code == 404


def test_duplicate_response_is_409():
    customer = f"cust_{uuid4().hex[:8]}"
    request = _create_request(customer)
    _respond(request["id"], "barber_dup")
    response = client.post(
        f"/requests/{request['id']}/responses",
        json={"barber_id": "barber_dup", "proposed_price": 70, "eta_minutes": 5},
    )
    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "DuplicateResponseError"


def test_accept_by_other_customer_is_403_and_second_accept_is_409():
    customer = f"cust_{uuid4().hex[:8]}"
    request = _create_request(customer)
    bid = _respond(request["id"], f"barber_{uuid4().hex[:8]}")

    forbidden = client.post(
        f"/requests/{request['id']}/accept",
        json={"customer_id": "intruder", "response_id": bid["id"]},
    )
    assert forbidden.status_code == 403

    accepted = client.post(
        f"/requests/{request['id']}/accept",
        json={"customer_id": customer, "response_id": bid["id"]},
    )
    assert accepted.status_code == 200
    assert accepted.json()["final_price"] == 80

    again = client.post(
        f"/requests/{request['id']}/accept",
        json={"customer_id": customer, "response_id": bid["id"]},
    )
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "AlreadyResolvedError"


def test_expired_offer_is_410():
    customer = f"cust_{uuid4().hex[:8]}"
    barber = f"barber_{uuid4().hex[:8]}"
    request = _create_request(customer)
    _respond(request["id"], barber)
    offer = client.post(
        f"/requests/{request['id']}/messages",
        json={"sender_id": barber, "sender_role": "barber", "type": "offer", "offer_amount": 70},
    )
    assert offer.status_code == 200

    with sqlite3.connect(orchestrator.store.db_path) as conn:
        conn.execute(
            "UPDATE negotiation_messages SET offer_expires_at = ? WHERE id = ?",
            ("2000-01-01T00:00:00.000000+00:00", offer.json()["id"]),
        )
        conn.commit()

    response = client.post(f"/messages/{offer.json()['id']}/respond", json={"actor_id": customer, "decision": "accept"})
    assert response.status_code == 410


def test_invalid_offer_is_400_and_wrong_responder_is_403():
    customer = f"cust_{uuid4().hex[:8]}"
    barber = f"barber_{uuid4().hex[:8]}"
    request = _create_request(customer)
    _respond(request["id"], barber)

    bad = client.post(
        f"/requests/{request['id']}/messages",
        json={"sender_id": barber, "sender_role": "barber", "type": "offer", "offer_amount": -5},
    )
    assert bad.status_code == 400

    offer = client.post(
        f"/requests/{request['id']}/messages",
        json={"sender_id": barber, "sender_role": "barber", "type": "offer", "offer_amount": 60},
    )
    current = client.get(f"/requests/{request['id']}/offers/current", params={"barber_id": barber})
    assert current.json()["id"] == offer.json()["id"]

    response = client.post(f"/messages/{offer.json()['id']}/respond", json={"actor_id": barber, "decision": "accept"})
    assert response.status_code == 403


def test_clients_cannot_post_system_messages():
    customer = f"cust_{uuid4().hex[:8]}"
    barber = f"barber_{uuid4().hex[:8]}"
    request = _create_request(customer)
    _respond(request["id"], barber)

    forged = client.post(
        f"/requests/{request['id']}/messages",
        json={"sender_id": barber, "sender_role": "barber", "type": "system", "content": "Booking confirmed"},
    )
    assert forged.status_code == 422
    assert client.get(f"/requests/{request['id']}/messages").json() == []


def test_booking_transition_errors():
    customer = f"cust_{uuid4().hex[:8]}"
    barber = f"barber_{uuid4().hex[:8]}"
    request = _create_request(customer)
    bid = _respond(request["id"], barber)
    booking = client.post(
        f"/requests/{request['id']}/accept",
        json={"customer_id": customer, "response_id": bid["id"]},
    ).json()

    skipped = client.post(f"/bookings/{booking['id']}/arrived", json={"actor_id": barber})
    assert skipped.status_code == 409
    assert skipped.json()["detail"]["error"] == "InvalidTransitionError"

    customer_move = client.post(f"/bookings/{booking['id']}/en-route", json={"actor_id": customer})
    assert customer_move.status_code == 403


def test_admin_sweep_requires_admin_token():
    customer_token = _login("cust_sweeper")
    denied = client.post("/admin/expiry/sweep", headers={"Authorization": f"Bearer {customer_token}"})
    assert denied.status_code == 403

    admin_token = _login("ops_admin", role="admin")
    allowed = client.post("/admin/expiry/sweep", headers={"Authorization": f"Bearer {admin_token}"})
    assert allowed.status_code == 200
    assert set(allowed.json()) == {"requests_cancelled", "responses_expired", "offers_expired"}


def test_barber_location_and_open_requests():
    barber = f"barber_{uuid4().hex[:8]}"
    missing = client.get("/requests/open", params={"barber_id": barber})
    assert missing.status_code == 404

    updated = client.put(
        f"/barbers/{barber}/location",
        json={"display_name": "Fade Master", "latitude": 32.0903, "longitude": 34.7818, "rating": 4.8},
    )
    assert updated.status_code == 200

    nearby = client.get("/barbers/nearby", params={"latitude": 32.0853, "longitude": 34.7818})
    assert barber in [item["barber_id"] for item in nearby.json()]

    request = _create_request(f"cust_{uuid4().hex[:8]}")
    open_requests = client.get("/requests/open", params={"barber_id": barber})
    assert open_requests.status_code == 200
    assert request["id"] in [item["request"]["id"] for item in open_requests.json()]

    bad = client.put(f"/barbers/{barber}/location", json={"latitude": 95, "longitude": 34.7})
    assert bad.status_code == 400
