from typing import Optional

from fastapi import APIRouter, Header, Query

from barbermatch.auth import assert_actor_authorized
from barbermatch.models import Booking, BookingActionRequest, BookingStatusChange
from barbermatch.routers.common import raise_marketplace_http_error
from barbermatch.services.errors import MarketplaceError
from barbermatch.services.request_orchestrator import orchestrator

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.get("", response_model=list[Booking])
def list_bookings(
    user_id: str = Query(...),
    role: Optional[str] = Query(default=None),
):
    try:
        return orchestrator.list_bookings(user_id, role)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/{booking_id}", response_model=Booking)
def get_booking(booking_id: str):
    try:
        return orchestrator.get_booking(booking_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/{booking_id}/history", response_model=list[BookingStatusChange])
def booking_history(booking_id: str):
    try:
        return orchestrator.booking_history(booking_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


def _apply(booking_id: str, action: str, request: BookingActionRequest, authorization: Optional[str]) -> Booking:
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        if action == "cancel":
            return orchestrator.cancel_booking(booking_id, request.actor_id, request.reason)
        if action == "dispute":
            return orchestrator.raise_dispute(booking_id, request.actor_id, request.reason)
        handlers = {
            "en-route": orchestrator.mark_en_route,
            "arrived": orchestrator.mark_arrived,
            "start": orchestrator.mark_started,
            "complete": orchestrator.mark_completed,
        }
        return handlers[action](booking_id, request.actor_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/{booking_id}/en-route", response_model=Booking)
def mark_en_route(booking_id: str, request: BookingActionRequest, authorization: Optional[str] = Header(default=None)):
    return _apply(booking_id, "en-route", request, authorization)


@router.post("/{booking_id}/arrived", response_model=Booking)
def mark_arrived(booking_id: str, request: BookingActionRequest, authorization: Optional[str] = Header(default=None)):
    return _apply(booking_id, "arrived", request, authorization)


@router.post("/{booking_id}/start", response_model=Booking)
def mark_started(booking_id: str, request: BookingActionRequest, authorization: Optional[str] = Header(default=None)):
    return _apply(booking_id, "start", request, authorization)


@router.post("/{booking_id}/complete", response_model=Booking)
def mark_completed(booking_id: str, request: BookingActionRequest, authorization: Optional[str] = Header(default=None)):
    return _apply(booking_id, "complete", request, authorization)


@router.post("/{booking_id}/cancel", response_model=Booking)
def cancel_booking(booking_id: str, request: BookingActionRequest, authorization: Optional[str] = Header(default=None)):
    return _apply(booking_id, "cancel", request, authorization)


@router.post("/{booking_id}/dispute", response_model=Booking)
def raise_dispute(booking_id: str, request: BookingActionRequest, authorization: Optional[str] = Header(default=None)):
    return _apply(booking_id, "dispute", request, authorization)
