import os
import sys
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from barbermatch.main import app

client = TestClient(app)


def _login(user_id: str, role: str) -> str:
    response = client.post("/auth/login", json={"user_id": user_id, "role": role, "password": "barbermatch-demo"})
    assert response.status_code == 200
    payload = response.json()
    return payload["access_token"]


def test_golden_path_request_negotiate_book_complete():
    customer = f"golden_customer_{uuid4().hex[:8]}"
    barber = f"golden_barber_{uuid4().hex[:8]}"
    rival = f"golden_rival_{uuid4().hex[:8]}"
    customer_auth = {"Authorization": f"Bearer {_login(customer, 'customer')}"}
    barber_auth = {"Authorization": f"Bearer {_login(barber, 'barber')}"}

    placed = client.put(
        f"/barbers/{barber}/location",
        json={"display_name": "Golden Cuts", "latitude": 32.0803, "longitude": 34.7818, "rating": 4.7},
        headers=barber_auth,
    )
    assert placed.status_code == 200

    created = client.post(
        "/requests",
        json={
            "customer_id": customer,
            "service_ids": ["haircut", "beard_trim"],
            "location": {"latitude": 32.0853, "longitude": 34.7818},
            "address": "12 Dizengoff St, Tel Aviv",
            "notes": "Second floor",
        },
        headers=customer_auth,
    )
    assert created.status_code == 200
    request_id = created.json()["id"]
    assert created.json()["status"] == "pending"

    barber_inbox = client.get("/notifications", params={"user_id": barber}, headers=barber_auth)
    assert barber_inbox.status_code == 200
    assert any(item["data"].get("request_id") == request_id for item in barber_inbox.json())

    bid = client.post(
        f"/requests/{request_id}/responses",
        json={"barber_id": barber, "proposed_price": 120, "eta_minutes": 15, "message": "Can be there fast"},
        headers=barber_auth,
    )
    assert bid.status_code == 200
    rival_bid = client.post(
        f"/requests/{request_id}/responses",
        json={"barber_id": rival, "proposed_price": 130, "eta_minutes": 25},
    )
    assert rival_bid.status_code == 200

    offer = client.post(
        f"/requests/{request_id}/messages",
        json={"sender_id": barber, "sender_role": "barber", "type": "offer", "offer_amount": 110},
        headers=barber_auth,
    )
    assert offer.status_code == 200
    counter = client.post(
        f"/requests/{request_id}/messages",
        json={
            "sender_id": customer,
            "sender_role": "customer",
            "type": "counter_offer",
            "offer_amount": 95,
            "barber_id": barber,
        },
        headers=customer_auth,
    )
    assert counter.status_code == 200
    final = client.post(
        f"/requests/{request_id}/messages",
        json={"sender_id": barber, "sender_role": "barber", "type": "counter_offer", "offer_amount": 100},
        headers=barber_auth,
    )
    assert final.status_code == 200

    stale = client.post(
        f"/messages/{offer.json()['id']}/respond",
        json={"actor_id": customer, "decision": "accept"},
        headers=customer_auth,
    )
    assert stale.status_code == 409

    decided = client.post(
        f"/messages/{final.json()['id']}/respond",
        json={"actor_id": customer, "decision": "accept"},
        headers=customer_auth,
    )
    assert decided.status_code == 200
    booking = decided.json()["booking"]
    assert booking["final_price"] == 100
    assert booking["barber_id"] == barber
    assert decided.json()["message"]["offer_status"] == "accepted"

    view = client.get(f"/requests/{request_id}").json()
    assert view["request"]["status"] == "confirmed"
    assert view["booking"]["id"] == booking["id"]
    assert {r["barber_id"]: r["status"] for r in view["responses"]} == {barber: "accepted", rival: "rejected"}

    messages = client.get(f"/requests/{request_id}/messages").json()
    assert [m["offer_status"] for m in messages if m["type"] != "system"] == ["countered", "countered", "accepted"]
    read = client.post(f"/requests/{request_id}/messages/read", json={"reader_id": customer}, headers=customer_auth)
    assert read.status_code == 200
    assert read.json()["updated"] >= 2

    for action in ("en-route", "arrived", "start", "complete"):
        step = client.post(f"/bookings/{booking['id']}/{action}", json={"actor_id": barber}, headers=barber_auth)
        assert step.status_code == 200
    assert client.get(f"/bookings/{booking['id']}").json()["status"] == "completed"
    history = client.get(f"/bookings/{booking['id']}/history").json()
    assert [h["to_status"] for h in history] == ["barber_en_route", "arrived", "in_progress", "completed"]
    assert client.get(f"/requests/{request_id}").json()["request"]["status"] == "confirmed"

    customer_inbox = client.get("/notifications", params={"user_id": customer, "unread_only": True}, headers=customer_auth)
    assert customer_inbox.status_code == 200
    titles = [item["title"] for item in customer_inbox.json()]
    assert "Booking confirmed" in titles
    assert "Booking update" in titles

    first_id = customer_inbox.json()[0]["id"]
    marked = client.post(f"/notifications/{first_id}/read", params={"user_id": customer}, headers=customer_auth)
    assert marked.status_code == 200
    assert marked.json()["read"] is True

    bookings = client.get("/bookings", params={"user_id": customer, "role": "customer"}).json()
    assert [b["id"] for b in bookings] == [booking["id"]]
