from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

RequestStatus = Literal["pending", "matching", "negotiating", "confirmed", "completed", "cancelled"]
ResponseStatus = Literal["pending", "accepted", "rejected", "expired"]
MessageType = Literal["text", "offer", "counter_offer", "system", "image"]
ClientMessageType = Literal["text", "offer", "counter_offer", "image"]
OfferStatus = Literal["pending", "accepted", "rejected", "countered", "expired"]
SenderRole = Literal["customer", "barber", "system"]
BookingStatus = Literal[
    "scheduled",
    "barber_en_route",
    "arrived",
    "in_progress",
    "completed",
    "cancelled",
    "disputed",
]


class GeoPoint(BaseModel):
    latitude: float
    longitude: float


class ServiceRequest(BaseModel):
    id: str
    customer_id: str
    location: GeoPoint
    address: str
    service_ids: list[str]
    notes: Optional[str] = None
    scheduled_time: Optional[str] = None
    status: RequestStatus
    created_at: str
    updated_at: str
    expires_at: str
    selected_barber_id: Optional[str] = None
    final_price: Optional[float] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None


class BarberResponse(BaseModel):
    id: str
    request_id: str
    barber_id: str
    proposed_price: float
    eta_minutes: int
    message: Optional[str] = None
    status: ResponseStatus
    responded_at: str
    expires_at: str
    updated_at: str


class NegotiationMessage(BaseModel):
    id: str
    request_id: str
    sender_id: str
    sender_role: SenderRole
    barber_id: Optional[str] = None
    type: MessageType
    content: Optional[str] = None
    image_url: Optional[str] = None
    offer_amount: Optional[float] = None
    offer_status: Optional[OfferStatus] = None
    offer_expires_at: Optional[str] = None
    is_read: bool = False
    read_at: Optional[str] = None
    created_at: str


class Booking(BaseModel):
    id: str
    request_id: str
    response_id: str
    barber_id: str
    customer_id: str
    final_price: float
    currency: str = "ILS"
    address: str
    location: GeoPoint
    scheduled_time: Optional[str] = None
    status: BookingStatus
    barber_en_route_at: Optional[str] = None
    barber_arrived_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    disputed_at: Optional[str] = None
    dispute_reason: Optional[str] = None
    created_at: str
    updated_at: str


class BookingStatusChange(BaseModel):
    id: str
    booking_id: str
    actor_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class NearbyBarber(BaseModel):
    barber_id: str
    display_name: str = ""
    latitude: float
    longitude: float
    rating: float = 0.0
    distance_meters: float


class ServiceRequestView(BaseModel):
    request: ServiceRequest
    responses: list[BarberResponse] = Field(default_factory=list)
    booking: Optional[Booking] = None


class SweepReport(BaseModel):
    requests_cancelled: int = 0
    responses_expired: int = 0
    offers_expired: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.requests_cancelled or self.responses_expired or self.offers_expired)


class OfferDecisionResult(BaseModel):
    message: NegotiationMessage
    booking: Optional[Booking] = None


class ServiceRequestCreate(BaseModel):
    customer_id: str
    service_ids: list[str]
    location: GeoPoint
    address: str
    notes: Optional[str] = None
    scheduled_time: Optional[str] = None


class ServiceRequestCancel(BaseModel):
    actor_id: str
    reason: str = "customer_cancelled"


class BarberResponseCreate(BaseModel):
    barber_id: str
    proposed_price: float
    eta_minutes: int
    message: Optional[str] = None


class BarberResponseRetract(BaseModel):
    barber_id: str


class AcceptResponseRequest(BaseModel):
    customer_id: str
    response_id: str
    offer_id: Optional[str] = None


class MessageCreate(BaseModel):
    sender_id: str
    sender_role: Literal["customer", "barber"]
    type: ClientMessageType = "text"
    content: Optional[str] = None
    offer_amount: Optional[float] = None
    barber_id: Optional[str] = None
    image_url: Optional[str] = None


class MessagesReadRequest(BaseModel):
    reader_id: str


class OfferDecisionRequest(BaseModel):
    actor_id: str
    decision: Literal["accept", "reject"]


class BookingActionRequest(BaseModel):
    actor_id: str
    reason: str = ""


class BarberLocationUpdate(BaseModel):
    display_name: str = ""
    latitude: float
    longitude: float
    is_available: bool = True
    rating: float = 0.0


class AuthLoginRequest(BaseModel):
    user_id: str
    role: Literal["customer", "barber", "admin"] = "customer"
    password: str = "barbermatch-demo"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    role: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: str


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["request", "response", "offer", "booking", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
    data: Dict[str, str] = Field(default_factory=dict)


class OpenRequestView(BaseModel):
    request: ServiceRequest
    distance_meters: float
