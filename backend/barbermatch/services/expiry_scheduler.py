import logging
import sqlite3
import threading
from datetime import datetime
from typing import List, Optional, Tuple

from barbermatch.models import SweepReport
from barbermatch.services.clock import Clock, to_iso
from barbermatch.services.notification_store import NotificationStore
from barbermatch.services.store import OPEN_REQUEST_STATUSES, MarketplaceStore, placeholders

logger = logging.getLogger(__name__)

NO_RESPONSE_REASON = "no_response"


def close_open_request(
    store: MarketplaceStore,
    conn: sqlite3.Connection,
    request_id: str,
    now_iso: str,
    reason: str,
) -> Optional[Tuple[int, int]]:
    """Cancel an open request and cascade to its pending responses and offers.

    Returns ``(responses_rejected, offers_expired)``, or None when the request
    was no longer open (already cancelled, confirmed or completed).
    """
    moved = store.compare_and_set(
        conn,
        "service_requests",
        request_id,
        OPEN_REQUEST_STATUSES,
        {
            "status": "cancelled",
            "cancelled_at": now_iso,
            "cancellation_reason": reason,
            "updated_at": now_iso,
        },
    )
    if not moved:
        return None
    responses = conn.execute(
        """
        UPDATE barber_responses
        SET status = 'rejected', updated_at = ?
        WHERE request_id = ? AND status = 'pending'
        """,
        (now_iso, request_id),
    ).rowcount
    offers = conn.execute(
        """
        UPDATE negotiation_messages
        SET offer_status = 'expired'
        WHERE request_id = ? AND offer_status = 'pending'
        """,
        (request_id,),
    ).rowcount
    store.insert_message(
        conn,
        request_id=request_id,
        sender_id="system",
        sender_role="system",
        message_type="system",
        content=f"Request cancelled ({reason})",
        created_at=now_iso,
    )
    return responses, offers


class ExpiryScheduler:
    """Moves stale requests, responses and offers to their terminal states.

    Every pass is idempotent. Operations call :meth:`reconcile_request` before
    acting so correctness never depends on the periodic sweep having run.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        clock: Clock,
        notifications: Optional[NotificationStore] = None,
    ):
        self._store = store
        self._clock = clock
        self._notifications = notifications
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        report, cancelled = self._run(request_id=None, now=now)
        if report.changed:
            logger.info(
                "expiry sweep: requests_cancelled=%s responses_expired=%s offers_expired=%s",
                report.requests_cancelled,
                report.responses_expired,
                report.offers_expired,
            )
        self._notify_cancelled(cancelled)
        return report

    def reconcile_request(self, request_id: str) -> SweepReport:
        report, cancelled = self._run(request_id=request_id)
        self._notify_cancelled(cancelled)
        return report

    def _run(
        self, request_id: Optional[str], now: Optional[datetime] = None
    ) -> Tuple[SweepReport, List[Tuple[str, str]]]:
        now_iso = to_iso(now or self._clock.now())
        report = SweepReport()
        cancelled: List[Tuple[str, str]] = []
        scope_sql = "" if request_id is None else " AND id = ?"
        scope_args: tuple = () if request_id is None else (request_id,)
        with self._store.transaction() as conn:
            stale_requests = conn.execute(
                f"""
                SELECT id, customer_id FROM service_requests
                WHERE status IN ({placeholders(OPEN_REQUEST_STATUSES)})
                  AND expires_at < ?{scope_sql}
                """,
                (*OPEN_REQUEST_STATUSES, now_iso, *scope_args),
            ).fetchall()
            for row in stale_requests:
                closed = close_open_request(self._store, conn, row["id"], now_iso, NO_RESPONSE_REASON)
                if closed is None:
                    continue
                report.requests_cancelled += 1
                report.offers_expired += closed[1]
                cancelled.append((row["id"], row["customer_id"]))
                logger.info("request %s cancelled: %s", row["id"], NO_RESPONSE_REASON)

            response_scope = "" if request_id is None else " AND request_id = ?"
            report.responses_expired += conn.execute(
                f"""
                UPDATE barber_responses
                SET status = 'expired', updated_at = ?
                WHERE status = 'pending'{response_scope}
                  AND (
                    expires_at < ?
                    OR request_id IN (
                        SELECT id FROM service_requests
                        WHERE status NOT IN ({placeholders(OPEN_REQUEST_STATUSES)})
                    )
                  )
                """,
                (now_iso, *scope_args, now_iso, *OPEN_REQUEST_STATUSES),
            ).rowcount

            report.offers_expired += conn.execute(
                f"""
                UPDATE negotiation_messages
                SET offer_status = 'expired'
                WHERE offer_status = 'pending'{response_scope}
                  AND (
                    offer_expires_at < ?
                    OR request_id IN (
                        SELECT id FROM service_requests
                        WHERE status NOT IN ({placeholders(OPEN_REQUEST_STATUSES)})
                    )
                    OR NOT EXISTS (
                        SELECT 1 FROM barber_responses r
                        WHERE r.request_id = negotiation_messages.request_id
                          AND r.barber_id = negotiation_messages.barber_id
                          AND r.status = 'pending'
                    )
                  )
                """,
                (*scope_args, now_iso, *OPEN_REQUEST_STATUSES),
            ).rowcount
        return report, cancelled

    def _notify_cancelled(self, cancelled: List[Tuple[str, str]]) -> None:
        if not self._notifications:
            return
        for request_id, customer_id in cancelled:
            self._notifications.notify(
                [customer_id],
                title="No barber available",
                body="Your request expired before a barber was confirmed.",
                category="request",
                deep_link=f"request:{request_id}",
            )

    # ---- periodic housekeeping -------------------------------------------

    def start(self, interval_seconds: float) -> None:
        if interval_seconds <= 0 or self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(interval_seconds,),
            name="expiry-sweep",
            daemon=True,
        )
        self._thread.start()
        logger.info("Expiry sweep started (every %ss)", interval_seconds)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self, interval_seconds: float) -> None:
        while not self._stop_event.wait(interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Expiry sweep failed; retrying next interval")
