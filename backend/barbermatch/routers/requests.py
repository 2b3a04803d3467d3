from typing import Optional

from fastapi import APIRouter, Header, Query

from barbermatch.auth import assert_actor_authorized
from barbermatch.models import (
    AcceptResponseRequest,
    BarberResponse,
    BarberResponseCreate,
    BarberResponseRetract,
    Booking,
    MessageCreate,
    MessagesReadRequest,
    NegotiationMessage,
    OfferDecisionRequest,
    OfferDecisionResult,
    OpenRequestView,
    ServiceRequest,
    ServiceRequestCancel,
    ServiceRequestCreate,
    ServiceRequestView,
)
from barbermatch.routers.common import raise_marketplace_http_error
from barbermatch.services.errors import MarketplaceError
from barbermatch.services.request_orchestrator import orchestrator

router = APIRouter(tags=["requests"])


@router.post("/requests", response_model=ServiceRequest)
def create_request(
    request: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.customer_id, authorization=authorization)
    try:
        return orchestrator.create_request(
            customer_id=request.customer_id,
            service_ids=request.service_ids,
            location=request.location,
            address=request.address,
            notes=request.notes,
            scheduled_time=request.scheduled_time,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests", response_model=list[ServiceRequest])
def list_customer_requests(customer_id: str = Query(...)):
    return orchestrator.list_requests_for_customer(customer_id)


@router.get("/requests/open", response_model=list[OpenRequestView])
def list_open_requests(
    barber_id: str = Query(...),
    radius_meters: Optional[int] = Query(default=None, gt=0),
):
    try:
        return [
            OpenRequestView(request=request, distance_meters=distance)
            for request, distance in orchestrator.list_open_requests_for_barber(barber_id, radius_meters)
        ]
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/{request_id}", response_model=ServiceRequestView)
def get_request(request_id: str):
    try:
        return orchestrator.get_request_view(request_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/cancel", response_model=ServiceRequest)
def cancel_request(
    request_id: str,
    request: ServiceRequestCancel,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        return orchestrator.cancel_request(request_id, request.actor_id, request.reason)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/{request_id}/responses", response_model=list[BarberResponse])
def list_responses(request_id: str):
    try:
        return orchestrator.list_responses(request_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/responses", response_model=BarberResponse)
def submit_response(
    request_id: str,
    request: BarberResponseCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.barber_id, authorization=authorization)
    try:
        return orchestrator.submit_response(
            request_id,
            barber_id=request.barber_id,
            proposed_price=request.proposed_price,
            eta_minutes=request.eta_minutes,
            message=request.message,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/responses/{response_id}/retract", response_model=BarberResponse)
def retract_response(
    response_id: str,
    request: BarberResponseRetract,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.barber_id, authorization=authorization)
    try:
        return orchestrator.retract_response(response_id, request.barber_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/accept", response_model=Booking)
def accept_response(
    request_id: str,
    request: AcceptResponseRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.customer_id, authorization=authorization)
    try:
        return orchestrator.accept(
            request_id, request.response_id, request.customer_id, offer_id=request.offer_id
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/{request_id}/messages", response_model=list[NegotiationMessage])
def list_messages(request_id: str, after: Optional[str] = Query(default=None)):
    try:
        return orchestrator.list_messages(request_id, after=after)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/messages", response_model=NegotiationMessage)
def post_message(
    request_id: str,
    request: MessageCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.sender_id, authorization=authorization)
    try:
        return orchestrator.post_message(
            request_id,
            sender_id=request.sender_id,
            sender_role=request.sender_role,
            message_type=request.type,
            content=request.content,
            offer_amount=request.offer_amount,
            barber_id=request.barber_id,
            image_url=request.image_url,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/requests/{request_id}/messages/read", response_model=dict)
def mark_messages_read(
    request_id: str,
    request: MessagesReadRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.reader_id, authorization=authorization)
    try:
        return {"updated": orchestrator.mark_messages_read(request_id, request.reader_id)}
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/requests/{request_id}/offers/current", response_model=Optional[NegotiationMessage])
def current_offer(request_id: str, barber_id: str = Query(...)):
    try:
        return orchestrator.current_offer(request_id, barber_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/messages/{message_id}/respond", response_model=OfferDecisionResult)
def respond_to_offer(
    message_id: str,
    request: OfferDecisionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        message, booking = orchestrator.respond_to_offer(message_id, request.actor_id, request.decision)
        return OfferDecisionResult(message=message, booking=booking)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)
