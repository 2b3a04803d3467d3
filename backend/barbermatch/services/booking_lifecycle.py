import logging
from typing import Dict, List, Optional
from uuid import uuid4

from barbermatch.models import Booking, BookingStatusChange
from barbermatch.services.clock import Clock, to_iso
from barbermatch.services.errors import (
    AlreadyResolvedError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from barbermatch.services.notification_store import NotificationStore
from barbermatch.services.store import MarketplaceStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, set[str]] = {
    "scheduled": {"barber_en_route", "cancelled", "disputed"},
    "barber_en_route": {"arrived", "cancelled", "disputed"},
    "arrived": {"in_progress", "cancelled", "disputed"},
    "in_progress": {"completed", "cancelled", "disputed"},
}
BARBER_ONLY_STATUSES = {"barber_en_route", "arrived", "in_progress", "completed"}

STATUS_TIMESTAMPS = {
    "barber_en_route": "barber_en_route_at",
    "arrived": "barber_arrived_at",
    "in_progress": "started_at",
    "completed": "completed_at",
    "cancelled": "cancelled_at",
    "disputed": "disputed_at",
}

STATUS_MESSAGES = {
    "barber_en_route": "Your barber is on the way.",
    "arrived": "Your barber has arrived.",
    "in_progress": "Your service has started.",
    "completed": "Your booking is complete.",
    "cancelled": "The booking was cancelled.",
    "disputed": "A dispute was raised on this booking.",
}


class BookingLifecycle:
    def __init__(self, store: MarketplaceStore, clock: Clock, notifications: Optional[NotificationStore] = None):
        self._store = store
        self._clock = clock
        self._notifications = notifications

    def mark_en_route(self, booking_id: str, actor_id: str) -> Booking:
        return self._transition(booking_id, actor_id, "barber_en_route")

    def mark_arrived(self, booking_id: str, actor_id: str) -> Booking:
        return self._transition(booking_id, actor_id, "arrived")

    def mark_started(self, booking_id: str, actor_id: str) -> Booking:
        return self._transition(booking_id, actor_id, "in_progress")

    def mark_completed(self, booking_id: str, actor_id: str) -> Booking:
        return self._transition(booking_id, actor_id, "completed")

    def cancel_booking(self, booking_id: str, actor_id: str, reason: str = "") -> Booking:
        return self._transition(booking_id, actor_id, "cancelled", reason=reason.strip() or "cancelled")

    def raise_dispute(self, booking_id: str, actor_id: str, reason: str) -> Booking:
        if not (reason or "").strip():
            raise ValidationError("A dispute needs a reason")
        return self._transition(booking_id, actor_id, "disputed", reason=reason.strip())

    def _transition(self, booking_id: str, actor_id: str, next_status: str, reason: str = "") -> Booking:
        now_iso = to_iso(self._clock.now())
        with self._store.transaction() as conn:
            row = self._store.fetch_booking_row(conn, booking_id)
            if actor_id not in (row["customer_id"], row["barber_id"]):
                raise PermissionDeniedError("Only the booking's customer or barber can update it")

            current_status = str(row["status"])
            if next_status not in ALLOWED_TRANSITIONS.get(current_status, set()):
                raise InvalidTransitionError(f"Invalid status transition: {current_status} -> {next_status}")
            if next_status in BARBER_ONLY_STATUSES and actor_id != row["barber_id"]:
                raise PermissionDeniedError("Only the barber can apply this status")

            changes = {"status": next_status, STATUS_TIMESTAMPS[next_status]: now_iso, "updated_at": now_iso}
            if next_status == "cancelled":
                changes["cancellation_reason"] = reason
            elif next_status == "disputed":
                changes["dispute_reason"] = reason
            if not self._store.compare_and_set(conn, "bookings", booking_id, (current_status,), changes):
                raise AlreadyResolvedError("Booking status changed concurrently")

            conn.execute(
                """
                INSERT INTO booking_status_history (id, booking_id, actor_id, from_status, to_status, note, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (f"bsh_{uuid4().hex[:10]}", booking_id, actor_id, current_status, next_status, reason, now_iso),
            )
            updated = self._store.booking_from_row(self._store.fetch_booking_row(conn, booking_id))

        logger.info("booking %s: %s -> %s by %s", booking_id, current_status, next_status, actor_id)
        if self._notifications:
            other_party = updated.customer_id if actor_id == updated.barber_id else updated.barber_id
            self._notifications.notify(
                [other_party],
                title="Booking update",
                body=STATUS_MESSAGES[next_status],
                category="booking",
                deep_link=f"booking:{booking_id}",
                data={"status": next_status},
            )
        return updated

    def get_booking(self, booking_id: str) -> Booking:
        with self._store.reader() as conn:
            return self._store.booking_from_row(self._store.fetch_booking_row(conn, booking_id))

    def get_booking_for_request(self, request_id: str) -> Optional[Booking]:
        with self._store.reader() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE request_id = ?", (request_id,)).fetchone()
        return self._store.booking_from_row(row) if row else None

    def list_bookings(self, user_id: str, role: Optional[str] = None) -> List[Booking]:
        if role not in (None, "customer", "barber"):
            raise ValidationError("Invalid role. Allowed: customer, barber")
        if role == "customer":
            where, args = "customer_id = ?", (user_id,)
        elif role == "barber":
            where, args = "barber_id = ?", (user_id,)
        else:
            where, args = "customer_id = ? OR barber_id = ?", (user_id, user_id)
        with self._store.reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM bookings WHERE {where} ORDER BY created_at DESC",
                args,
            ).fetchall()
        return [self._store.booking_from_row(row) for row in rows]

    def booking_history(self, booking_id: str) -> List[BookingStatusChange]:
        with self._store.reader() as conn:
            self._store.fetch_booking_row(conn, booking_id)
            rows = conn.execute(
                "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at ASC, rowid ASC",
                (booking_id,),
            ).fetchall()
        return [self._store.history_from_row(row) for row in rows]
