import logging
import math
import sqlite3
from datetime import timedelta
from typing import List, Optional, Tuple

from barbermatch.models import Booking, NegotiationMessage
from barbermatch.services.acceptance_resolver import AcceptanceResolver
from barbermatch.services.clock import Clock, parse_iso, to_iso
from barbermatch.services.errors import (
    AlreadyResolvedError,
    ExpiredOfferError,
    InvalidOfferError,
    NotFoundError,
    NotOfferOwnerError,
    PermissionDeniedError,
    RequestClosedError,
    ValidationError,
)
from barbermatch.services.expiry_scheduler import ExpiryScheduler
from barbermatch.services.notification_store import NotificationStore
from barbermatch.services.store import OFFER_TYPES, OPEN_REQUEST_STATUSES, MarketplaceStore

logger = logging.getLogger(__name__)

CLIENT_MESSAGE_TYPES = ("text", "offer", "counter_offer", "image")
CLIENT_ROLES = ("customer", "barber")


class NegotiationChannel:
    """Append-only message log per request, with offer/counter-offer rules.

    Offers belong to a customer/barber pair (``barber_id``). Within a pair only
    the newest pending offer is actionable; posting a new one marks the
    previous pending offer ``countered``.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        clock: Clock,
        expiry: ExpiryScheduler,
        resolver: AcceptanceResolver,
        notifications: Optional[NotificationStore] = None,
        offer_ttl: timedelta = timedelta(minutes=15),
    ):
        self._store = store
        self._clock = clock
        self._expiry = expiry
        self._resolver = resolver
        self._notifications = notifications
        self.offer_ttl = offer_ttl

    def post_message(
        self,
        request_id: str,
        sender_id: str,
        sender_role: str,
        message_type: str,
        content: Optional[str] = None,
        offer_amount: Optional[float] = None,
        barber_id: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> NegotiationMessage:
        if message_type not in CLIENT_MESSAGE_TYPES:
            raise ValidationError(f"Invalid message type. Allowed: {', '.join(CLIENT_MESSAGE_TYPES)}")
        if sender_role not in CLIENT_ROLES:
            raise ValidationError("sender_role must be customer or barber")
        is_offer = message_type in OFFER_TYPES
        if is_offer:
            if offer_amount is None or not math.isfinite(offer_amount) or offer_amount <= 0:
                raise InvalidOfferError("Offer amount must be greater than zero")
        elif offer_amount is not None:
            raise ValidationError("offer_amount is only allowed on offers")
        content = (content or "").strip() or None
        image_url = (image_url or "").strip() or None
        if message_type == "text" and not content:
            raise ValidationError("Message content is required")
        if message_type == "image" and not image_url:
            raise ValidationError("image_url is required for image messages")

        self._expiry.reconcile_request(request_id)
        now = self._clock.now()
        now_iso = to_iso(now)
        with self._store.transaction() as conn:
            request_row = self._store.fetch_request_row(conn, request_id)
            pair_barber = self._resolve_pair(conn, request_row, sender_id, sender_role, barber_id)
            status = request_row["status"]

            if is_offer:
                if status not in OPEN_REQUEST_STATUSES or request_row["expires_at"] < now_iso:
                    raise RequestClosedError("This request is no longer open for offers")
                if not pair_barber:
                    raise InvalidOfferError("Customer offers must name the barber they are sent to")
                response_row = self._pending_response_row(conn, request_id, pair_barber)
                if response_row is None:
                    raise RequestClosedError("This barber's response is no longer available")

                superseded = conn.execute(
                    """
                    UPDATE negotiation_messages
                    SET offer_status = 'countered'
                    WHERE request_id = ? AND barber_id = ? AND offer_status = 'pending'
                    """,
                    (request_id, pair_barber),
                ).rowcount
                # Offers can hold a request open for at most one offer window past its matching deadline.
                extension_cap = parse_iso(request_row["match_deadline"] or request_row["expires_at"]) + self.offer_ttl
                offer_expires_iso = to_iso(min(now + self.offer_ttl, extension_cap))
                message = self._store.insert_message(
                    conn,
                    request_id=request_id,
                    sender_id=sender_id,
                    sender_role=sender_role,
                    barber_id=pair_barber,
                    message_type=message_type,
                    content=content,
                    offer_amount=float(offer_amount),
                    offer_status="pending",
                    offer_expires_at=offer_expires_iso,
                    created_at=now_iso,
                )
                # A live offer keeps its request and response open until the offer lapses.
                conn.execute(
                    "UPDATE service_requests SET expires_at = MAX(expires_at, ?), updated_at = ? WHERE id = ?",
                    (offer_expires_iso, now_iso, request_id),
                )
                conn.execute(
                    "UPDATE barber_responses SET expires_at = MAX(expires_at, ?), updated_at = ? WHERE id = ?",
                    (offer_expires_iso, now_iso, response_row["id"]),
                )
                self._store.compare_and_set(
                    conn,
                    "service_requests",
                    request_id,
                    ("matching",),
                    {"status": "negotiating", "updated_at": now_iso},
                )
                if superseded:
                    logger.info("offer %s supersedes %s pending offer(s) on %s", message.id, superseded, request_id)
            else:
                if status == "confirmed":
                    if pair_barber != request_row["selected_barber_id"]:
                        raise RequestClosedError("Only the booked barber can chat on a confirmed request")
                elif status not in OPEN_REQUEST_STATUSES:
                    raise RequestClosedError("This conversation is closed")
                message = self._store.insert_message(
                    conn,
                    request_id=request_id,
                    sender_id=sender_id,
                    sender_role=sender_role,
                    barber_id=pair_barber,
                    message_type=message_type,
                    content=content,
                    image_url=image_url,
                    created_at=now_iso,
                )
            customer_id = request_row["customer_id"]

        self._notify_counterpart(message, customer_id)
        return message

    def respond_to_offer(
        self, message_id: str, actor_id: str, decision: str
    ) -> Tuple[NegotiationMessage, Optional[Booking]]:
        if decision not in ("accept", "reject"):
            raise ValidationError("Invalid decision. Allowed: accept, reject")
        with self._store.reader() as conn:
            request_id = self._store.fetch_message_row(conn, message_id)["request_id"]
        self._expiry.reconcile_request(request_id)
        now_iso = to_iso(self._clock.now())

        booking: Optional[Booking] = None
        with self._store.transaction() as conn:
            row = self._store.fetch_message_row(conn, message_id)
            if row["message_type"] not in OFFER_TYPES:
                raise InvalidOfferError("Message is not an offer")
            request_row = self._store.fetch_request_row(conn, request_id)
            counterpart = request_row["customer_id"] if row["sender_role"] == "barber" else row["barber_id"]
            if actor_id != counterpart:
                raise NotOfferOwnerError("Only the other party can respond to this offer")

            offer_status = row["offer_status"]
            if offer_status == "expired" or (
                offer_status == "pending" and row["offer_expires_at"] and row["offer_expires_at"] < now_iso
            ):
                raise ExpiredOfferError("This offer is no longer available")
            if offer_status != "pending":
                raise AlreadyResolvedError(f"Offer is already {offer_status}")

            if decision == "reject":
                if not self._store.compare_and_set(
                    conn,
                    "negotiation_messages",
                    message_id,
                    ("pending",),
                    {"offer_status": "rejected"},
                    status_column="offer_status",
                ):
                    raise AlreadyResolvedError("Offer was resolved concurrently")
            else:
                response_row = self._pending_response_row(conn, request_id, row["barber_id"])
                if response_row is None:
                    raise RequestClosedError("This barber's response is no longer available")
                booking = self._resolver.accept_in(
                    conn,
                    request_id=request_id,
                    response_id=response_row["id"],
                    accepting_customer_id=request_row["customer_id"],
                    offer_id=message_id,
                    offer_amount=float(row["offer_amount"]),
                )
            updated = self._store.message_from_row(self._store.fetch_message_row(conn, message_id))

        if booking is not None:
            self._resolver.announce(booking)
        elif self._notifications:
            self._notifications.notify(
                [row["sender_id"]],
                title="Offer declined",
                body=f"Your offer of {updated.offer_amount:g} was declined.",
                category="offer",
                deep_link=f"request:{request_id}",
            )
        return updated, booking

    def current_offer(self, request_id: str, barber_id: str) -> Optional[NegotiationMessage]:
        self._expiry.reconcile_request(request_id)
        with self._store.reader() as conn:
            self._store.fetch_request_row(conn, request_id)
            row = conn.execute(
                """
                SELECT * FROM negotiation_messages
                WHERE request_id = ? AND barber_id = ? AND offer_status = 'pending'
                ORDER BY seq DESC
                LIMIT 1
                """,
                (request_id, barber_id),
            ).fetchone()
        return self._store.message_from_row(row) if row else None

    def list_messages(self, request_id: str, after: Optional[str] = None) -> List[NegotiationMessage]:
        with self._store.reader() as conn:
            self._store.fetch_request_row(conn, request_id)
            after_seq = 0
            if after:
                anchor = conn.execute(
                    "SELECT seq FROM negotiation_messages WHERE id = ? AND request_id = ?",
                    (after, request_id),
                ).fetchone()
                if not anchor:
                    raise NotFoundError("Message not found")
                after_seq = int(anchor["seq"])
            rows = conn.execute(
                """
                SELECT * FROM negotiation_messages
                WHERE request_id = ? AND seq > ?
                ORDER BY seq ASC
                """,
                (request_id, after_seq),
            ).fetchall()
        return [self._store.message_from_row(row) for row in rows]

    def mark_read(self, request_id: str, reader_id: str) -> int:
        now_iso = to_iso(self._clock.now())
        with self._store.transaction() as conn:
            request_row = self._store.fetch_request_row(conn, request_id)
            if reader_id == request_row["customer_id"]:
                scope_sql, scope_args = "", ()
            elif conn.execute(
                "SELECT 1 FROM barber_responses WHERE request_id = ? AND barber_id = ?",
                (request_id, reader_id),
            ).fetchone():
                scope_sql, scope_args = " AND (barber_id = ? OR barber_id IS NULL)", (reader_id,)
            else:
                raise PermissionDeniedError("Only conversation participants can read messages")
            return conn.execute(
                f"""
                UPDATE negotiation_messages
                SET is_read = 1, read_at = ?
                WHERE request_id = ? AND sender_id != ? AND is_read = 0{scope_sql}
                """,
                (now_iso, request_id, reader_id, *scope_args),
            ).rowcount

    # ---- helpers ----------------------------------------------------------

    def _resolve_pair(
        self,
        conn: sqlite3.Connection,
        request_row: sqlite3.Row,
        sender_id: str,
        sender_role: str,
        barber_id: Optional[str],
    ) -> Optional[str]:
        if sender_role == "customer":
            if sender_id != request_row["customer_id"]:
                raise PermissionDeniedError("Only the requesting customer can post as customer")
            if barber_id and not conn.execute(
                "SELECT 1 FROM barber_responses WHERE request_id = ? AND barber_id = ?",
                (request_row["id"], barber_id),
            ).fetchone():
                raise NotFoundError("Barber has not responded to this request")
            return barber_id or None

        if barber_id and barber_id != sender_id:
            raise ValidationError("Barbers can only post in their own conversation")
        if not conn.execute(
            "SELECT 1 FROM barber_responses WHERE request_id = ? AND barber_id = ?",
            (request_row["id"], sender_id),
        ).fetchone():
            raise PermissionDeniedError("Only barbers who responded can join this conversation")
        return sender_id

    def _pending_response_row(
        self, conn: sqlite3.Connection, request_id: str, barber_id: str
    ) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT * FROM barber_responses
            WHERE request_id = ? AND barber_id = ? AND status = 'pending'
            """,
            (request_id, barber_id),
        ).fetchone()

    def _notify_counterpart(self, message: NegotiationMessage, customer_id: str) -> None:
        if not self._notifications:
            return
        if message.sender_role == "barber":
            recipients = [customer_id]
        elif message.barber_id:
            recipients = [message.barber_id]
        else:
            return
        if message.type in OFFER_TYPES:
            title = "New counter-offer" if message.type == "counter_offer" else "New offer"
            body = f"{message.offer_amount:g} offered, valid until {message.offer_expires_at}."
            category = "offer"
        else:
            title = "New message"
            body = message.content or "Sent an image"
            category = "request"
        self._notifications.notify(
            recipients,
            title=title,
            body=body,
            category=category,
            deep_link=f"request:{message.request_id}",
            data={"message_id": message.id},
        )
