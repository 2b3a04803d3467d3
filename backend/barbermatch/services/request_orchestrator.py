import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from barbermatch.models import (
    BarberResponse,
    Booking,
    BookingStatusChange,
    GeoPoint,
    NearbyBarber,
    NegotiationMessage,
    ServiceRequest,
    ServiceRequestView,
    SweepReport,
)
from barbermatch.services.acceptance_resolver import AcceptanceResolver
from barbermatch.services.booking_lifecycle import BookingLifecycle
from barbermatch.services.clock import Clock, parse_iso, system_clock, to_iso
from barbermatch.services.errors import InvalidTransitionError, PermissionDeniedError, ValidationError
from barbermatch.services.expiry_scheduler import ExpiryScheduler, close_open_request
from barbermatch.services.geo_match import GeoMatchFinder, haversine_meters, validate_coordinates
from barbermatch.services.negotiation_channel import NegotiationChannel
from barbermatch.services.notification_store import NotificationStore, notification_store
from barbermatch.services.response_collector import ResponseCollector
from barbermatch.services.store import OPEN_REQUEST_STATUSES, MarketplaceStore, placeholders

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    return value if value > 0 else default


MATCH_WINDOW_MINUTES = _env_int("MATCH_WINDOW_MINUTES", 15)
OFFER_TTL_MINUTES = _env_int("OFFER_TTL_MINUTES", 15)
RESPONSE_TTL_MINUTES = _env_int("RESPONSE_TTL_MINUTES", 15)
MATCH_RADIUS_METERS = _env_int("MATCH_RADIUS_METERS", 5000)
BOOKING_CURRENCY = os.getenv("BOOKING_CURRENCY", "ILS").strip() or "ILS"


class RequestOrchestrator:
    """Entry point for every negotiation-engine operation used by the API."""

    def __init__(
        self,
        store: MarketplaceStore,
        clock: Clock = system_clock,
        notifications: Optional[NotificationStore] = None,
        *,
        match_window: timedelta = timedelta(minutes=MATCH_WINDOW_MINUTES),
        offer_ttl: timedelta = timedelta(minutes=OFFER_TTL_MINUTES),
        response_ttl: timedelta = timedelta(minutes=RESPONSE_TTL_MINUTES),
        match_radius_meters: int = MATCH_RADIUS_METERS,
        currency: str = BOOKING_CURRENCY,
    ):
        self.store = store
        self.clock = clock
        self.notifications = notifications
        self.match_window = match_window
        self.geo = GeoMatchFinder(store, clock, default_radius_meters=match_radius_meters)
        self.expiry = ExpiryScheduler(store, clock, notifications)
        self.responses = ResponseCollector(store, clock, self.expiry, response_ttl=response_ttl)
        self.resolver = AcceptanceResolver(store, clock, self.expiry, notifications, currency=currency)
        self.negotiation = NegotiationChannel(
            store, clock, self.expiry, self.resolver, notifications, offer_ttl=offer_ttl
        )
        self.bookings = BookingLifecycle(store, clock, notifications)

    # ---- requests ---------------------------------------------------------

    def create_request(
        self,
        customer_id: str,
        service_ids: Sequence[str],
        location: GeoPoint,
        address: str,
        notes: Optional[str] = None,
        scheduled_time: Optional[Union[str, datetime]] = None,
    ) -> ServiceRequest:
        customer_id = (customer_id or "").strip()
        if not customer_id:
            raise ValidationError("customer_id is required")
        cleaned_services = list(dict.fromkeys(str(item).strip() for item in (service_ids or []) if str(item).strip()))
        if not cleaned_services:
            raise ValidationError("At least one service is required")
        if location is None:
            raise ValidationError("Location is required")
        validate_coordinates(location.latitude, location.longitude)
        cleaned_address = (address or "").strip()
        if not cleaned_address:
            raise ValidationError("Address is required")

        now = self.clock.now()
        scheduled = self._parse_scheduled_time(scheduled_time, now)
        expires_at = self._match_deadline(now, scheduled)
        now_iso = to_iso(now)
        request_id = f"req_{uuid4().hex[:10]}"
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO service_requests (
                    id, customer_id, latitude, longitude, address, service_ids_json, notes, scheduled_time,
                    status, created_at, updated_at, expires_at, match_deadline
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)
                """,
                (
                    request_id,
                    customer_id,
                    location.latitude,
                    location.longitude,
                    cleaned_address,
                    json.dumps(cleaned_services),
                    (notes or "").strip() or None,
                    to_iso(scheduled) if scheduled else None,
                    now_iso,
                    now_iso,
                    to_iso(expires_at),
                    to_iso(expires_at),
                ),
            )
            request = self.store.request_from_row(self.store.fetch_request_row(conn, request_id))
        logger.info("request %s created by %s (expires %s)", request_id, customer_id, request.expires_at)
        self._fan_out(request)
        return request

    def _parse_scheduled_time(
        self, scheduled_time: Optional[Union[str, datetime]], now: datetime
    ) -> Optional[datetime]:
        if scheduled_time is None or scheduled_time == "":
            return None
        if isinstance(scheduled_time, datetime):
            scheduled = scheduled_time if scheduled_time.tzinfo else scheduled_time.replace(tzinfo=timezone.utc)
        elif not isinstance(scheduled_time, str):
            raise ValidationError("scheduled_time must be an ISO-8601 timestamp")
        else:
            try:
                scheduled = parse_iso(scheduled_time)
            except (TypeError, ValueError) as exc:
                raise ValidationError("scheduled_time must be an ISO-8601 timestamp") from exc
        if scheduled < now:
            raise ValidationError("scheduled_time cannot be in the past")
        return scheduled

    def _match_deadline(self, now: datetime, scheduled: Optional[datetime]) -> datetime:
        immediate = now + self.match_window
        if scheduled is None:
            return immediate
        # Scheduled visits stay open until one window before the appointment.
        return max(immediate, scheduled - self.match_window)

    def _fan_out(self, request: ServiceRequest) -> List[NearbyBarber]:
        if not self.notifications:
            return []
        try:
            candidates = self.geo.find_nearby(
                request.location.latitude,
                request.location.longitude,
                exclude_user_id=request.customer_id,
            )
        except Exception:
            logger.exception("Candidate lookup failed for request %s", request.id)
            return []
        self.notifications.notify(
            [candidate.barber_id for candidate in candidates],
            title="New service request",
            body=f"{', '.join(request.service_ids)} near {request.address}",
            category="request",
            deep_link=f"request:{request.id}",
            data={"request_id": request.id},
        )
        logger.info("request %s fanned out to %s barber(s)", request.id, len(candidates))
        return candidates

    def cancel_request(self, request_id: str, actor_id: str, reason: str = "customer_cancelled") -> ServiceRequest:
        self.expiry.reconcile_request(request_id)
        now_iso = to_iso(self.clock.now())
        reason = (reason or "").strip() or "customer_cancelled"
        with self.store.transaction() as conn:
            row = self.store.fetch_request_row(conn, request_id)
            if row["customer_id"] != actor_id:
                raise PermissionDeniedError("Only the requesting customer can cancel this request")
            if row["status"] not in OPEN_REQUEST_STATUSES:
                raise InvalidTransitionError(f"Cannot cancel a {row['status']} request")
            if close_open_request(self.store, conn, request_id, now_iso, reason) is None:
                raise InvalidTransitionError("Request changed state while cancelling")
            barber_ids = [
                r["barber_id"]
                for r in conn.execute(
                    "SELECT barber_id FROM barber_responses WHERE request_id = ? AND status = 'rejected'",
                    (request_id,),
                ).fetchall()
            ]
            request = self.store.request_from_row(self.store.fetch_request_row(conn, request_id))
        logger.info("request %s cancelled by %s: %s", request_id, actor_id, reason)
        if self.notifications:
            self.notifications.notify(
                barber_ids,
                title="Request cancelled",
                body="The customer cancelled this request.",
                category="request",
                deep_link=f"request:{request_id}",
            )
        return request

    def get_request(self, request_id: str) -> ServiceRequest:
        self.expiry.reconcile_request(request_id)
        with self.store.reader() as conn:
            return self.store.request_from_row(self.store.fetch_request_row(conn, request_id))

    def get_request_view(self, request_id: str) -> ServiceRequestView:
        self.expiry.reconcile_request(request_id)
        with self.store.reader() as conn:
            request = self.store.request_from_row(self.store.fetch_request_row(conn, request_id))
            responses = self.store.responses_for_request(conn, request_id)
        booking = self.bookings.get_booking_for_request(request_id)
        return ServiceRequestView(request=request, responses=responses, booking=booking)

    def list_requests_for_customer(self, customer_id: str) -> List[ServiceRequest]:
        self.expiry.sweep()
        with self.store.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM service_requests WHERE customer_id = ? ORDER BY created_at DESC",
                (customer_id,),
            ).fetchall()
        return [self.store.request_from_row(row) for row in rows]

    def list_open_requests_for_barber(
        self, barber_id: str, radius_meters: Optional[int] = None
    ) -> List[Tuple[ServiceRequest, float]]:
        latitude, longitude = self.geo.location_of(barber_id)
        radius = radius_meters or self.geo.default_radius_meters
        self.expiry.sweep()
        with self.store.reader() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM service_requests
                WHERE status IN ({placeholders(OPEN_REQUEST_STATUSES)})
                  AND customer_id != ?
                """,
                (*OPEN_REQUEST_STATUSES, barber_id),
            ).fetchall()
        nearby: List[Tuple[ServiceRequest, float]] = []
        for row in rows:
            distance = haversine_meters(latitude, longitude, float(row["latitude"]), float(row["longitude"]))
            if distance <= radius:
                nearby.append((self.store.request_from_row(row), round(distance, 1)))
        nearby.sort(key=lambda item: (item[1], item[0].created_at))
        return nearby

    # ---- responses --------------------------------------------------------

    def submit_response(
        self,
        request_id: str,
        barber_id: str,
        proposed_price: float,
        eta_minutes: int,
        message: Optional[str] = None,
    ) -> BarberResponse:
        response = self.responses.submit_response(request_id, barber_id, proposed_price, eta_minutes, message)
        if self.notifications:
            with self.store.reader() as conn:
                customer_id = self.store.fetch_request_row(conn, request_id)["customer_id"]
            self.notifications.notify(
                [customer_id],
                title="New barber response",
                body=f"A barber can come in {response.eta_minutes} min for {response.proposed_price:g}.",
                category="response",
                deep_link=f"request:{request_id}",
                data={"response_id": response.id},
            )
        return response

    def retract_response(self, response_id: str, barber_id: str) -> BarberResponse:
        return self.responses.retract_response(response_id, barber_id)

    def list_responses(self, request_id: str) -> List[BarberResponse]:
        self.expiry.reconcile_request(request_id)
        return self.responses.list_responses(request_id)

    # ---- negotiation ------------------------------------------------------

    def post_message(
        self,
        request_id: str,
        sender_id: str,
        sender_role: str,
        message_type: str = "text",
        content: Optional[str] = None,
        offer_amount: Optional[float] = None,
        barber_id: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> NegotiationMessage:
        return self.negotiation.post_message(
            request_id,
            sender_id,
            sender_role,
            message_type,
            content=content,
            offer_amount=offer_amount,
            barber_id=barber_id,
            image_url=image_url,
        )

    def respond_to_offer(
        self, message_id: str, actor_id: str, decision: str
    ) -> Tuple[NegotiationMessage, Optional[Booking]]:
        return self.negotiation.respond_to_offer(message_id, actor_id, decision)

    def current_offer(self, request_id: str, barber_id: str) -> Optional[NegotiationMessage]:
        return self.negotiation.current_offer(request_id, barber_id)

    def list_messages(self, request_id: str, after: Optional[str] = None) -> List[NegotiationMessage]:
        self.expiry.reconcile_request(request_id)
        return self.negotiation.list_messages(request_id, after=after)

    def mark_messages_read(self, request_id: str, reader_id: str) -> int:
        return self.negotiation.mark_read(request_id, reader_id)

    # ---- acceptance & bookings -------------------------------------------

    def accept(
        self, request_id: str, response_id: str, accepting_customer_id: str, offer_id: Optional[str] = None
    ) -> Booking:
        return self.resolver.accept(request_id, response_id, accepting_customer_id, offer_id=offer_id)

    def mark_en_route(self, booking_id: str, actor_id: str) -> Booking:
        return self.bookings.mark_en_route(booking_id, actor_id)

    def mark_arrived(self, booking_id: str, actor_id: str) -> Booking:
        return self.bookings.mark_arrived(booking_id, actor_id)

    def mark_started(self, booking_id: str, actor_id: str) -> Booking:
        return self.bookings.mark_started(booking_id, actor_id)

    def mark_completed(self, booking_id: str, actor_id: str) -> Booking:
        return self.bookings.mark_completed(booking_id, actor_id)

    def cancel_booking(self, booking_id: str, actor_id: str, reason: str = "") -> Booking:
        return self.bookings.cancel_booking(booking_id, actor_id, reason)

    def raise_dispute(self, booking_id: str, actor_id: str, reason: str) -> Booking:
        return self.bookings.raise_dispute(booking_id, actor_id, reason)

    def get_booking(self, booking_id: str) -> Booking:
        return self.bookings.get_booking(booking_id)

    def list_bookings(self, user_id: str, role: Optional[str] = None) -> List[Booking]:
        return self.bookings.list_bookings(user_id, role)

    def booking_history(self, booking_id: str) -> List[BookingStatusChange]:
        return self.bookings.booking_history(booking_id)

    # ---- barbers & housekeeping ------------------------------------------

    def update_barber_location(
        self,
        barber_id: str,
        latitude: float,
        longitude: float,
        *,
        display_name: str = "",
        is_available: bool = True,
        rating: float = 0.0,
    ) -> None:
        self.geo.update_location(
            barber_id,
            latitude,
            longitude,
            display_name=display_name,
            is_available=is_available,
            rating=rating,
        )

    def find_nearby_barbers(
        self, latitude: float, longitude: float, radius_meters: Optional[int] = None
    ) -> List[NearbyBarber]:
        return self.geo.find_nearby(latitude, longitude, radius_meters)

    def sweep(self) -> SweepReport:
        return self.expiry.sweep()


def build_orchestrator(
    db_path: str,
    clock: Clock = system_clock,
    notifications: Optional[NotificationStore] = None,
    **options,
) -> RequestOrchestrator:
    return RequestOrchestrator(MarketplaceStore(db_path=db_path), clock, notifications, **options)


default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")
orchestrator = build_orchestrator(os.getenv("MARKETPLACE_DB_PATH", default_db), notifications=notification_store)
