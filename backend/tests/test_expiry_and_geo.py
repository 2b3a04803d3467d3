import os
import sqlite3
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from barbermatch.models import GeoPoint
from barbermatch.services.errors import NotFoundError, ValidationError
from barbermatch.services.geo_match import haversine_meters

LOCATION = GeoPoint(latitude=32.0853, longitude=34.7818)


def test_unanswered_request_is_cancelled_by_sweep(engine, open_request, clock, notifications):
    clock.advance(minutes=16)
    report = engine.sweep()

    assert report.requests_cancelled == 1
    request = engine.get_request(open_request.id)
    assert request.status == "cancelled"
    assert request.cancellation_reason == "no_response"
    assert any(n.title == "No barber available" for n in notifications.list_for_user("cust_1"))


def test_sweep_is_idempotent(engine, open_request, clock):
    engine.submit_response(open_request.id, "barber_x", 80, 10)
    engine.post_message(open_request.id, "barber_x", "barber", "offer", offer_amount=75)
    clock.advance(minutes=20)

    first = engine.sweep()
    assert first.requests_cancelled == 1
    assert first.offers_expired == 1
    before = engine.get_request_view(open_request.id)

    second = engine.sweep()
    assert not second.changed
    after = engine.get_request_view(open_request.id)
    assert after == before
    assert [r.status for r in after.responses] == ["rejected"]


def test_sweep_leaves_live_requests_alone(engine, open_request, clock):
    clock.advance(minutes=10)
    assert not engine.sweep().changed
    assert engine.get_request(open_request.id).status == "pending"


def test_sweep_accepts_explicit_time(engine, open_request, clock):
    from datetime import timedelta

    report = engine.expiry.sweep(now=clock.now() + timedelta(minutes=30))
    assert report.requests_cancelled == 1


def test_reads_apply_lazy_expiry_without_sweep(engine, open_request, clock):
    clock.advance(minutes=15, seconds=1)
    assert engine.get_request(open_request.id).status == "cancelled"


def test_repeated_offers_cannot_keep_request_open_forever(engine, open_request, clock):
    engine.submit_response(open_request.id, "barber_x", 80, 10)
    deadline = open_request.expires_at
    offers = []
    for minutes in (10, 10, 8):
        clock.advance(minutes=minutes)
        offers.append(engine.post_message(open_request.id, "barber_x", "barber", "offer", offer_amount=75))

    last = offers[-1].offer_expires_at
    assert offers[1].offer_expires_at == last
    assert engine.get_request(open_request.id).expires_at == last
    assert last > deadline

    clock.advance(minutes=3)
    report = engine.sweep()
    assert report.requests_cancelled == 1
    assert engine.get_request(open_request.id).status == "cancelled"
    assert engine.current_offer(open_request.id, "barber_x") is None


def test_sweep_expires_offer_orphaned_by_raw_update(engine, open_request):
    engine.submit_response(open_request.id, "barber_x", 80, 10)
    offer = engine.post_message(open_request.id, "barber_x", "barber", "offer", offer_amount=75)
    with sqlite3.connect(engine.store.db_path) as conn:
        conn.execute("UPDATE barber_responses SET status = 'expired' WHERE request_id = ?", (open_request.id,))
        conn.commit()

    report = engine.sweep()
    assert report.offers_expired == 1
    assert engine.current_offer(open_request.id, "barber_x") is None
    assert [m.offer_status for m in engine.list_messages(open_request.id) if m.id == offer.id] == ["expired"]


def test_background_sweep_thread_starts_and_stops(engine):
    engine.expiry.start(0.05)
    assert engine.expiry.running
    engine.expiry.stop()
    assert not engine.expiry.running
    engine.expiry.start(0)
    assert not engine.expiry.running


def test_haversine_one_degree_at_equator():
    assert haversine_meters(0, 0, 0, 1) == pytest.approx(111195, abs=100)


def test_find_nearby_sorts_by_distance_and_filters(engine):
    engine.update_barber_location("b_mid", 32.1053, 34.7818, display_name="Mid", rating=4.9)
    engine.update_barber_location("b_near", 32.0903, 34.7818, display_name="Near", rating=4.1)
    engine.update_barber_location("b_far", 32.1853, 34.7818)
    engine.update_barber_location("b_off", 32.0863, 34.7818, is_available=False)

    found = engine.find_nearby_barbers(LOCATION.latitude, LOCATION.longitude)
    assert [b.barber_id for b in found] == ["b_near", "b_mid"]
    assert found[0].distance_meters < found[1].distance_meters <= 5000

    wider = engine.find_nearby_barbers(LOCATION.latitude, LOCATION.longitude, radius_meters=20000)
    assert [b.barber_id for b in wider] == ["b_near", "b_mid", "b_far"]


def test_location_validation(engine):
    with pytest.raises(ValidationError):
        engine.update_barber_location("b1", 100, 0)
    with pytest.raises(ValidationError):
        engine.find_nearby_barbers(0, 200)
    with pytest.raises(ValidationError):
        engine.find_nearby_barbers(0, 0, radius_meters=-5)


def test_new_request_fans_out_to_nearby_barbers(engine, notifications):
    engine.update_barber_location("b_near", 32.0903, 34.7818)
    engine.update_barber_location("b_far", 33.0, 35.5)
    engine.update_barber_location("cust_1", 32.0853, 34.7818)

    request = engine.create_request("cust_1", ["haircut"], LOCATION, "12 Dizengoff St")

    inbox = notifications.list_for_user("b_near")
    assert [n.data.get("request_id") for n in inbox] == [request.id]
    assert notifications.list_for_user("b_far") == []
    assert notifications.list_for_user("cust_1") == []


def test_open_requests_for_barber(engine, open_request):
    with pytest.raises(NotFoundError):
        engine.list_open_requests_for_barber("b_unknown")

    engine.update_barber_location("b_near", 32.0903, 34.7818)
    nearby = engine.list_open_requests_for_barber("b_near")
    assert [(request.id, round(distance)) for request, distance in nearby] == [(open_request.id, 556)]
    assert engine.list_open_requests_for_barber("b_near", radius_meters=100) == []
