import logging
import sqlite3
from typing import Optional
from uuid import uuid4

from barbermatch.models import Booking
from barbermatch.services.clock import Clock, to_iso
from barbermatch.services.errors import (
    AlreadyResolvedError,
    ExpiredOfferError,
    InvalidOfferError,
    InvalidTransitionError,
    NotFoundError,
    NotOfferOwnerError,
    PermissionDeniedError,
    RequestClosedError,
)
from barbermatch.services.expiry_scheduler import ExpiryScheduler
from barbermatch.services.notification_store import NotificationStore
from barbermatch.services.store import ACCEPTABLE_REQUEST_STATUSES, OFFER_TYPES, MarketplaceStore

logger = logging.getLogger(__name__)


class AcceptanceResolver:
    """Turns one pending response into the request's single booking.

    All five effects (accept target, reject siblings, expire other offers,
    confirm request, insert booking) run in one immediate transaction, and
    every status write is a compare-and-swap. A caller that loses a race gets
    :class:`AlreadyResolvedError` and nothing is written.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        clock: Clock,
        expiry: ExpiryScheduler,
        notifications: Optional[NotificationStore] = None,
        currency: str = "ILS",
    ):
        self._store = store
        self._clock = clock
        self._expiry = expiry
        self._notifications = notifications
        self.currency = currency

    def accept(
        self,
        request_id: str,
        response_id: str,
        accepting_customer_id: str,
        offer_id: Optional[str] = None,
    ) -> Booking:
        self._expiry.reconcile_request(request_id)
        with self._store.transaction() as conn:
            offer_amount = None
            if offer_id is not None:
                offer_amount = self._pending_offer_amount(conn, request_id, response_id, offer_id)
            booking = self.accept_in(
                conn,
                request_id=request_id,
                response_id=response_id,
                accepting_customer_id=accepting_customer_id,
                offer_id=offer_id,
                offer_amount=offer_amount,
            )
        self.announce(booking)
        return booking

    def _pending_offer_amount(
        self, conn: sqlite3.Connection, request_id: str, response_id: str, offer_id: str
    ) -> float:
        offer_row = self._store.fetch_message_row(conn, offer_id)
        response_row = self._store.fetch_response_row(conn, response_id)
        if (
            offer_row["message_type"] not in OFFER_TYPES
            or offer_row["request_id"] != request_id
            or offer_row["barber_id"] != response_row["barber_id"]
        ):
            raise InvalidOfferError("Offer does not belong to this response")
        # The customer accepts here, so only the barber's side of the pair is acceptable.
        if offer_row["sender_role"] != "barber":
            raise NotOfferOwnerError("Only the other party can accept this offer")
        if offer_row["offer_status"] == "expired" or offer_row["offer_expires_at"] < to_iso(self._clock.now()):
            raise ExpiredOfferError("This offer is no longer available")
        if offer_row["offer_status"] != "pending":
            raise AlreadyResolvedError(f"Offer is already {offer_row['offer_status']}")
        return float(offer_row["offer_amount"])

    def accept_in(
        self,
        conn: sqlite3.Connection,
        *,
        request_id: str,
        response_id: str,
        accepting_customer_id: str,
        offer_id: Optional[str] = None,
        offer_amount: Optional[float] = None,
    ) -> Booking:
        """Acceptance body for callers that already hold a store transaction."""
        now_iso = to_iso(self._clock.now())
        request_row = self._store.fetch_request_row(conn, request_id)
        if request_row["customer_id"] != accepting_customer_id:
            raise PermissionDeniedError("Only the requesting customer can accept a response")

        status = request_row["status"]
        if status in ("confirmed", "completed"):
            raise AlreadyResolvedError("Request already has a confirmed booking")
        if status == "cancelled":
            raise RequestClosedError("This request is no longer available")
        if status not in ACCEPTABLE_REQUEST_STATUSES:
            raise InvalidTransitionError(f"Cannot accept while request is {status}")
        if request_row["expires_at"] < now_iso:
            raise RequestClosedError("This request is no longer available")

        response_row = self._store.fetch_response_row(conn, response_id)
        if response_row["request_id"] != request_id:
            raise NotFoundError("Barber response not found for this request")
        if response_row["status"] != "pending":
            raise AlreadyResolvedError(f"Response is already {response_row['status']}")
        if response_row["expires_at"] < now_iso:
            raise RequestClosedError("This response is no longer available")

        confirmed_price = float(response_row["proposed_price"]) if offer_amount is None else float(offer_amount)
        barber_id = response_row["barber_id"]

        if not self._store.compare_and_set(
            conn,
            "service_requests",
            request_id,
            ACCEPTABLE_REQUEST_STATUSES,
            {
                "status": "confirmed",
                "selected_barber_id": barber_id,
                "final_price": confirmed_price,
                "updated_at": now_iso,
            },
        ):
            raise AlreadyResolvedError("Request was resolved concurrently")
        if not self._store.compare_and_set(
            conn,
            "barber_responses",
            response_id,
            ("pending",),
            {"status": "accepted", "updated_at": now_iso},
        ):
            raise AlreadyResolvedError("Response was resolved concurrently")

        conn.execute(
            """
            UPDATE barber_responses
            SET status = 'rejected', updated_at = ?
            WHERE request_id = ? AND id != ? AND status = 'pending'
            """,
            (now_iso, request_id, response_id),
        )
        if offer_id is not None:
            if not self._store.compare_and_set(
                conn,
                "negotiation_messages",
                offer_id,
                ("pending",),
                {"offer_status": "accepted"},
                status_column="offer_status",
            ):
                raise AlreadyResolvedError("Offer was resolved concurrently")
        conn.execute(
            """
            UPDATE negotiation_messages
            SET offer_status = 'expired'
            WHERE request_id = ? AND offer_status = 'pending'
            """,
            (request_id,),
        )

        booking_id = f"bk_{uuid4().hex[:10]}"
        try:
            conn.execute(
                """
                INSERT INTO bookings (
                    id, request_id, response_id, barber_id, customer_id, final_price, currency, address,
                    latitude, longitude, scheduled_time, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'scheduled', ?, ?)
                """,
                (
                    booking_id,
                    request_id,
                    response_id,
                    barber_id,
                    accepting_customer_id,
                    confirmed_price,
                    self.currency,
                    request_row["address"],
                    request_row["latitude"],
                    request_row["longitude"],
                    request_row["scheduled_time"],
                    now_iso,
                    now_iso,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise AlreadyResolvedError("Booking already exists for this request") from exc

        self._store.insert_message(
            conn,
            request_id=request_id,
            sender_id="system",
            sender_role="system",
            barber_id=barber_id,
            message_type="system",
            content=f"Booking confirmed at {confirmed_price:g} {self.currency}",
            created_at=now_iso,
        )
        return self._store.booking_from_row(self._store.fetch_booking_row(conn, booking_id))

    def announce(self, booking: Booking) -> None:
        logger.info(
            "request %s confirmed: booking %s barber=%s price=%s",
            booking.request_id,
            booking.id,
            booking.barber_id,
            booking.final_price,
        )
        if not self._notifications:
            return
        self._notifications.notify(
            [booking.customer_id, booking.barber_id],
            title="Booking confirmed",
            body=f"Your booking is confirmed at {booking.final_price:g} {booking.currency}.",
            category="booking",
            deep_link=f"booking:{booking.id}",
            data={"request_id": booking.request_id},
        )
        try:
            with self._store.reader() as conn:
                losers = conn.execute(
                    """
                    SELECT DISTINCT barber_id FROM barber_responses
                    WHERE request_id = ? AND status = 'rejected'
                    """,
                    (booking.request_id,),
                ).fetchall()
        except sqlite3.Error:
            logger.exception("Could not load competing barbers for request %s", booking.request_id)
            return
        self._notifications.notify(
            [row["barber_id"] for row in losers],
            title="Request filled",
            body="The customer booked another barber.",
            category="response",
            deep_link=f"request:{booking.request_id}",
        )
