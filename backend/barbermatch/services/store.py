import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

from barbermatch.models import (
    BarberResponse,
    Booking,
    BookingStatusChange,
    GeoPoint,
    NegotiationMessage,
    ServiceRequest,
)
from barbermatch.services.errors import NotFoundError

OPEN_REQUEST_STATUSES = ("pending", "matching", "negotiating")
ACCEPTABLE_REQUEST_STATUSES = ("matching", "negotiating")
OFFER_TYPES = ("offer", "counter_offer")


def placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


@dataclass
class MarketplaceStore:
    """sqlite3-backed persistence for requests, responses, messages and bookings.

    Every write goes through :meth:`transaction`, which holds the process lock
    and an immediate (write-reserved) sqlite transaction, so all status
    compare-and-swaps inside one block commit or roll back together.
    """

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS service_requests (
                        id TEXT PRIMARY KEY,
                        customer_id TEXT NOT NULL,
                        latitude REAL NOT NULL,
                        longitude REAL NOT NULL,
                        address TEXT NOT NULL,
                        service_ids_json TEXT NOT NULL,
                        notes TEXT,
                        scheduled_time TEXT,
                        status TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        match_deadline TEXT,
                        selected_barber_id TEXT,
                        final_price REAL,
                        cancelled_at TEXT,
                        cancellation_reason TEXT
                    );
                    CREATE INDEX IF NOT EXISTS ix_requests_status_expiry
                        ON service_requests (status, expires_at);
                    CREATE INDEX IF NOT EXISTS ix_requests_customer
                        ON service_requests (customer_id, created_at);

                    CREATE TABLE IF NOT EXISTS barber_responses (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        barber_id TEXT NOT NULL,
                        proposed_price REAL NOT NULL,
                        eta_minutes INTEGER NOT NULL,
                        message TEXT,
                        status TEXT NOT NULL,
                        responded_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );
                    CREATE UNIQUE INDEX IF NOT EXISTS ux_responses_live_per_barber
                        ON barber_responses (request_id, barber_id) WHERE status != 'expired';
                    CREATE UNIQUE INDEX IF NOT EXISTS ux_responses_single_accept
                        ON barber_responses (request_id) WHERE status = 'accepted';

                    CREATE TABLE IF NOT EXISTS negotiation_messages (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT NOT NULL UNIQUE,
                        request_id TEXT NOT NULL,
                        sender_id TEXT NOT NULL,
                        sender_role TEXT NOT NULL,
                        barber_id TEXT,
                        message_type TEXT NOT NULL,
                        content TEXT,
                        image_url TEXT,
                        offer_amount REAL,
                        offer_status TEXT,
                        offer_expires_at TEXT,
                        is_read INTEGER NOT NULL DEFAULT 0,
                        read_at TEXT,
                        created_at TEXT NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS ix_messages_request
                        ON negotiation_messages (request_id, seq);
                    CREATE UNIQUE INDEX IF NOT EXISTS ux_messages_pending_offer_per_pair
                        ON negotiation_messages (request_id, barber_id) WHERE offer_status = 'pending';

                    CREATE TABLE IF NOT EXISTS bookings (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL UNIQUE,
                        response_id TEXT NOT NULL,
                        barber_id TEXT NOT NULL,
                        customer_id TEXT NOT NULL,
                        final_price REAL NOT NULL,
                        currency TEXT NOT NULL,
                        address TEXT NOT NULL,
                        latitude REAL NOT NULL,
                        longitude REAL NOT NULL,
                        scheduled_time TEXT,
                        status TEXT NOT NULL,
                        barber_en_route_at TEXT,
                        barber_arrived_at TEXT,
                        started_at TEXT,
                        completed_at TEXT,
                        cancelled_at TEXT,
                        cancellation_reason TEXT,
                        disputed_at TEXT,
                        dispute_reason TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS booking_status_history (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        actor_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS barber_locations (
                        barber_id TEXT PRIMARY KEY,
                        display_name TEXT NOT NULL DEFAULT '',
                        latitude REAL NOT NULL,
                        longitude REAL NOT NULL,
                        is_available INTEGER NOT NULL DEFAULT 1,
                        rating REAL NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL
                    );
                    """
                )
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    # ---- row access -------------------------------------------------------

    def fetch_request_row(self, conn: sqlite3.Connection, request_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise NotFoundError("Service request not found")
        return row

    def fetch_response_row(self, conn: sqlite3.Connection, response_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM barber_responses WHERE id = ?", (response_id,)).fetchone()
        if not row:
            raise NotFoundError("Barber response not found")
        return row

    def fetch_message_row(self, conn: sqlite3.Connection, message_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM negotiation_messages WHERE id = ?", (message_id,)).fetchone()
        if not row:
            raise NotFoundError("Message not found")
        return row

    def fetch_booking_row(self, conn: sqlite3.Connection, booking_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFoundError("Booking not found")
        return row

    def find_live_response_row(
        self, conn: sqlite3.Connection, request_id: str, barber_id: str
    ) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT * FROM barber_responses
            WHERE request_id = ? AND barber_id = ? AND status != 'expired'
            """,
            (request_id, barber_id),
        ).fetchone()

    def compare_and_set(
        self,
        conn: sqlite3.Connection,
        table: str,
        row_id: str,
        expected: Iterable[str],
        changes: Dict[str, Any],
        *,
        status_column: str = "status",
        key_column: str = "id",
    ) -> bool:
        """Apply ``changes`` only while ``status_column`` is still one of ``expected``."""
        expected = tuple(expected)
        assignments = ", ".join(f"{column} = ?" for column in changes)
        cursor = conn.execute(
            f"""
            UPDATE {table}
            SET {assignments}
            WHERE {key_column} = ? AND {status_column} IN ({placeholders(expected)})
            """,
            (*changes.values(), row_id, *expected),
        )
        return cursor.rowcount == 1

    def insert_message(
        self,
        conn: sqlite3.Connection,
        *,
        request_id: str,
        sender_id: str,
        sender_role: str,
        message_type: str,
        created_at: str,
        barber_id: Optional[str] = None,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
        offer_amount: Optional[float] = None,
        offer_status: Optional[str] = None,
        offer_expires_at: Optional[str] = None,
    ) -> NegotiationMessage:
        message_id = f"msg_{uuid4().hex[:12]}"
        conn.execute(
            """
            INSERT INTO negotiation_messages (
                id, request_id, sender_id, sender_role, barber_id, message_type, content, image_url,
                offer_amount, offer_status, offer_expires_at, is_read, read_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?)
            """,
            (
                message_id,
                request_id,
                sender_id,
                sender_role,
                barber_id,
                message_type,
                content,
                image_url,
                offer_amount,
                offer_status,
                offer_expires_at,
                created_at,
            ),
        )
        return self.message_from_row(self.fetch_message_row(conn, message_id))

    # ---- row -> model -----------------------------------------------------

    def request_from_row(self, row: sqlite3.Row) -> ServiceRequest:
        try:
            service_ids = json.loads(row["service_ids_json"])
        except (TypeError, ValueError):
            service_ids = []
        return ServiceRequest(
            id=row["id"],
            customer_id=row["customer_id"],
            location=GeoPoint(latitude=row["latitude"], longitude=row["longitude"]),
            address=row["address"],
            service_ids=[str(item) for item in service_ids] if isinstance(service_ids, list) else [],
            notes=row["notes"],
            scheduled_time=row["scheduled_time"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
            selected_barber_id=row["selected_barber_id"],
            final_price=row["final_price"],
            cancelled_at=row["cancelled_at"],
            cancellation_reason=row["cancellation_reason"],
        )

    def response_from_row(self, row: sqlite3.Row) -> BarberResponse:
        return BarberResponse(
            id=row["id"],
            request_id=row["request_id"],
            barber_id=row["barber_id"],
            proposed_price=row["proposed_price"],
            eta_minutes=row["eta_minutes"],
            message=row["message"],
            status=row["status"],
            responded_at=row["responded_at"],
            expires_at=row["expires_at"],
            updated_at=row["updated_at"],
        )

    def message_from_row(self, row: sqlite3.Row) -> NegotiationMessage:
        return NegotiationMessage(
            id=row["id"],
            request_id=row["request_id"],
            sender_id=row["sender_id"],
            sender_role=row["sender_role"],
            barber_id=row["barber_id"],
            type=row["message_type"],
            content=row["content"],
            image_url=row["image_url"],
            offer_amount=row["offer_amount"],
            offer_status=row["offer_status"],
            offer_expires_at=row["offer_expires_at"],
            is_read=bool(row["is_read"]),
            read_at=row["read_at"],
            created_at=row["created_at"],
        )

    def booking_from_row(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            request_id=row["request_id"],
            response_id=row["response_id"],
            barber_id=row["barber_id"],
            customer_id=row["customer_id"],
            final_price=row["final_price"],
            currency=row["currency"],
            address=row["address"],
            location=GeoPoint(latitude=row["latitude"], longitude=row["longitude"]),
            scheduled_time=row["scheduled_time"],
            status=row["status"],
            barber_en_route_at=row["barber_en_route_at"],
            barber_arrived_at=row["barber_arrived_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
            cancellation_reason=row["cancellation_reason"],
            disputed_at=row["disputed_at"],
            dispute_reason=row["dispute_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def history_from_row(self, row: sqlite3.Row) -> BookingStatusChange:
        return BookingStatusChange(
            id=row["id"],
            booking_id=row["booking_id"],
            actor_id=row["actor_id"],
            from_status=row["from_status"],
            to_status=row["to_status"],
            note=row["note"],
            created_at=row["created_at"],
        )

    def responses_for_request(self, conn: sqlite3.Connection, request_id: str) -> List[BarberResponse]:
        rows = conn.execute(
            "SELECT * FROM barber_responses WHERE request_id = ? ORDER BY responded_at ASC, id ASC",
            (request_id,),
        ).fetchall()
        return [self.response_from_row(row) for row in rows]
