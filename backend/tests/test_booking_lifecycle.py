import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from barbermatch.services.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)


@pytest.fixture
def booking(engine, open_request):
    response = engine.submit_response(open_request.id, "barber_x", 80, 10)
    return engine.accept(open_request.id, response.id, "cust_1")


def test_full_visit_leaves_request_confirmed(engine, booking, clock, notifications):
    engine.mark_en_route(booking.id, "barber_x")
    clock.advance(minutes=10)
    engine.mark_arrived(booking.id, "barber_x")
    engine.mark_started(booking.id, "barber_x")
    clock.advance(minutes=30)
    done = engine.mark_completed(booking.id, "barber_x")

    assert done.status == "completed"
    assert done.barber_en_route_at and done.barber_arrived_at and done.started_at and done.completed_at
    assert engine.get_request(booking.request_id).status == "confirmed"
    history = engine.booking_history(booking.id)
    assert [(h.from_status, h.to_status) for h in history] == [
        ("scheduled", "barber_en_route"),
        ("barber_en_route", "arrived"),
        ("arrived", "in_progress"),
        ("in_progress", "completed"),
    ]
    assert any(n.body == "Your barber is on the way." for n in notifications.list_for_user("cust_1"))


def test_progress_updates_are_barber_only(engine, booking):
    with pytest.raises(PermissionDeniedError):
        engine.mark_en_route(booking.id, "cust_1")
    with pytest.raises(PermissionDeniedError):
        engine.cancel_booking(booking.id, "stranger", "no")


def test_illegal_transitions_are_rejected(engine, booking):
    with pytest.raises(InvalidTransitionError):
        engine.mark_arrived(booking.id, "barber_x")
    with pytest.raises(InvalidTransitionError):
        engine.mark_completed(booking.id, "barber_x")
    assert engine.get_booking(booking.id).status == "scheduled"


def test_cancel_is_terminal_and_keeps_request_confirmed(engine, booking):
    cancelled = engine.cancel_booking(booking.id, "cust_1", "running late")
    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "running late"
    assert cancelled.cancelled_at is not None
    assert engine.get_request(booking.request_id).status == "confirmed"
    with pytest.raises(InvalidTransitionError):
        engine.mark_en_route(booking.id, "barber_x")
    with pytest.raises(InvalidTransitionError):
        engine.raise_dispute(booking.id, "cust_1", "never showed up")


def test_dispute_requires_reason(engine, booking):
    engine.mark_en_route(booking.id, "barber_x")
    with pytest.raises(ValidationError):
        engine.raise_dispute(booking.id, "cust_1", "  ")
    disputed = engine.raise_dispute(booking.id, "cust_1", "Wrong address")
    assert disputed.status == "disputed"
    assert disputed.dispute_reason == "Wrong address"


def test_booking_listing_by_role(engine, booking):
    assert [b.id for b in engine.list_bookings("cust_1", "customer")] == [booking.id]
    assert engine.list_bookings("cust_1", "barber") == []
    assert [b.id for b in engine.list_bookings("barber_x")] == [booking.id]
    with pytest.raises(ValidationError):
        engine.list_bookings("cust_1", "admin")
    with pytest.raises(NotFoundError):
        engine.get_booking("bk_missing")
