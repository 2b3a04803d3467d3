import logging
import math
import sqlite3
from datetime import timedelta
from typing import List, Optional
from uuid import uuid4

from barbermatch.models import BarberResponse
from barbermatch.services.clock import Clock, parse_iso, to_iso
from barbermatch.services.errors import (
    AlreadyResolvedError,
    DuplicateResponseError,
    PermissionDeniedError,
    RequestClosedError,
    ValidationError,
)
from barbermatch.services.expiry_scheduler import ExpiryScheduler
from barbermatch.services.store import OPEN_REQUEST_STATUSES, MarketplaceStore

logger = logging.getLogger(__name__)


class ResponseCollector:
    def __init__(
        self,
        store: MarketplaceStore,
        clock: Clock,
        expiry: ExpiryScheduler,
        response_ttl: timedelta = timedelta(minutes=15),
    ):
        self._store = store
        self._clock = clock
        self._expiry = expiry
        self.response_ttl = response_ttl

    def submit_response(
        self,
        request_id: str,
        barber_id: str,
        proposed_price: float,
        eta_minutes: int,
        message: Optional[str] = None,
    ) -> BarberResponse:
        barber_id = (barber_id or "").strip()
        if not barber_id:
            raise ValidationError("barber_id is required")
        if proposed_price is None or not math.isfinite(proposed_price) or proposed_price <= 0:
            raise ValidationError("Proposed price must be greater than zero")
        if eta_minutes is None or eta_minutes < 0:
            raise ValidationError("ETA minutes cannot be negative")

        self._expiry.reconcile_request(request_id)
        now = self._clock.now()
        now_iso = to_iso(now)
        response_id = f"resp_{uuid4().hex[:10]}"
        try:
            with self._store.transaction() as conn:
                request_row = self._store.fetch_request_row(conn, request_id)
                if request_row["customer_id"] == barber_id:
                    raise ValidationError("Customers cannot respond to their own request")
                if request_row["status"] not in OPEN_REQUEST_STATUSES or request_row["expires_at"] < now_iso:
                    raise RequestClosedError("This request is no longer available")
                if self._store.find_live_response_row(conn, request_id, barber_id):
                    raise DuplicateResponseError("Barber already responded to this request")

                request_expiry = parse_iso(request_row["expires_at"])
                expires_at = min(now + self.response_ttl, request_expiry) if request_expiry else now + self.response_ttl
                conn.execute(
                    """
                    INSERT INTO barber_responses (
                        id, request_id, barber_id, proposed_price, eta_minutes, message, status, responded_at, expires_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                    """,
                    (
                        response_id,
                        request_id,
                        barber_id,
                        float(proposed_price),
                        int(eta_minutes),
                        (message or "").strip() or None,
                        now_iso,
                        to_iso(expires_at),
                        now_iso,
                    ),
                )
                self._store.compare_and_set(
                    conn,
                    "service_requests",
                    request_id,
                    ("pending",),
                    {"status": "matching", "updated_at": now_iso},
                )
                row = self._store.fetch_response_row(conn, response_id)
        except sqlite3.IntegrityError as exc:
            # Another submission from the same barber won the unique index.
            raise DuplicateResponseError("Barber already responded to this request") from exc
        logger.info("response %s submitted by %s on %s", response_id, barber_id, request_id)
        return self._store.response_from_row(row)

    def retract_response(self, response_id: str, barber_id: str) -> BarberResponse:
        with self._store.reader() as conn:
            request_id = self._store.fetch_response_row(conn, response_id)["request_id"]
        self._expiry.reconcile_request(request_id)
        now_iso = to_iso(self._clock.now())
        with self._store.transaction() as conn:
            row = self._store.fetch_response_row(conn, response_id)
            if row["barber_id"] != barber_id:
                raise PermissionDeniedError("Only the responding barber can retract this response")
            retracted = self._store.compare_and_set(
                conn,
                "barber_responses",
                response_id,
                ("pending",),
                {"status": "expired", "updated_at": now_iso},
            )
            if not retracted:
                raise AlreadyResolvedError(f"Response is already {row['status']}")
            conn.execute(
                """
                UPDATE negotiation_messages
                SET offer_status = 'expired'
                WHERE request_id = ? AND barber_id = ? AND offer_status = 'pending'
                """,
                (row["request_id"], barber_id),
            )
            updated = self._store.fetch_response_row(conn, response_id)
        logger.info("response %s retracted by %s", response_id, barber_id)
        return self._store.response_from_row(updated)

    def list_responses(self, request_id: str) -> List[BarberResponse]:
        with self._store.reader() as conn:
            self._store.fetch_request_row(conn, request_id)
            return self._store.responses_for_request(conn, request_id)
