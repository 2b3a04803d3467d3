import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from barbermatch.models import NotificationRecord

logger = logging.getLogger(__name__)

Listener = Callable[[NotificationRecord], None]


class NotificationStore:
    """In-process notification inbox plus fan-out to registered listeners.

    Delivery is fire-and-forget: :meth:`notify` never raises, so a failing
    listener cannot roll back the negotiation transaction that triggered it.
    """

    def __init__(self, max_per_user: int = 100):
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []
        self._listeners: List[Listener] = []
        self._max_per_user = max_per_user

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
        data: Optional[Dict[str, str]] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
            data=data or {},
        )
        with self._lock:
            self._notifications.insert(0, record)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("Notification listener failed for %s", record.id)
        return record

    def notify(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
        data: Optional[Dict[str, str]] = None,
    ) -> List[NotificationRecord]:
        sent: List[NotificationRecord] = []
        for user_id in dict.fromkeys(user_ids):
            if not user_id:
                continue
            try:
                sent.append(self.create(user_id, title, body, category=category, deep_link=deep_link, data=data))
            except Exception:
                logger.exception("Notification dispatch failed for user %s", user_id)
        return sent

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[: self._max_per_user]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
