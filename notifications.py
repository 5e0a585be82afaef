"""
Order notifications.

The order engine never calls a notifier directly. After a transaction commits
it publishes an entry to the outbox; the HTTP layer flushes the outbox once
the response is sent. Delivery failures are logged and the entry stays
pending until `max_attempts` is reached.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

ORDER_CONFIRMED = "order_confirmed"
ORDER_SHIPPED = "order_shipped"
ORDER_DELIVERED = "order_delivered"


class Notifier(Protocol):
    def notify_order_confirmed(self, order_id: str) -> None: ...

    def notify_order_shipped(self, order_id: str, tracking_number: Optional[str]) -> None: ...

    def notify_order_delivered(self, order_id: str) -> None: ...


class LoggingNotifier:
    """Stand-in used when no mail provider is wired in."""

    def notify_order_confirmed(self, order_id: str) -> None:
        logger.info("Order confirmation queued for order %s", order_id)

    def notify_order_shipped(self, order_id: str, tracking_number: Optional[str]) -> None:
        logger.info("Shipping update queued for order %s (tracking %s)", order_id, tracking_number)

    def notify_order_delivered(self, order_id: str) -> None:
        logger.info("Delivery confirmation queued for order %s", order_id)


@dataclass
class OutboxEntry:
    kind: str
    order_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    last_error: Optional[str] = None


class Outbox:
    def __init__(self, notifier: Notifier, max_attempts: int = 3):
        self.notifier = notifier
        self.max_attempts = max_attempts
        self._lock = threading.Lock()
        self._pending: Deque[OutboxEntry] = deque()
        self.dead_letters: List[OutboxEntry] = []

    def publish(self, kind: str, order_id: str, **payload: Any) -> OutboxEntry:
        entry = OutboxEntry(kind=kind, order_id=order_id, payload=payload)
        with self._lock:
            self._pending.append(entry)
        return entry

    @property
    def pending(self) -> List[OutboxEntry]:
        with self._lock:
            return list(self._pending)

    def _deliver(self, entry: OutboxEntry) -> None:
        if entry.kind == ORDER_CONFIRMED:
            self.notifier.notify_order_confirmed(entry.order_id)
        elif entry.kind == ORDER_SHIPPED:
            self.notifier.notify_order_shipped(entry.order_id, entry.payload.get("tracking_number"))
        elif entry.kind == ORDER_DELIVERED:
            self.notifier.notify_order_delivered(entry.order_id)
        else:
            raise ValueError(f"Unknown notification kind: {entry.kind}")

    def flush(self) -> int:
        """Deliver everything pending once; returns how many were delivered."""
        delivered = 0
        retry: List[OutboxEntry] = []
        while True:
            with self._lock:
                if not self._pending:
                    break
                entry = self._pending.popleft()
            try:
                self._deliver(entry)
                delivered += 1
            except Exception as exc:
                entry.attempts += 1
                entry.last_error = str(exc)
                logger.exception(
                    "Failed to send %s notification for order %s (attempt %d)",
                    entry.kind, entry.order_id, entry.attempts,
                )
                if entry.attempts < self.max_attempts:
                    retry.append(entry)
                else:
                    logger.error("Giving up on %s notification for order %s", entry.kind, entry.order_id)
                    self.dead_letters.append(entry)
        if retry:
            with self._lock:
                self._pending.extend(retry)
        return delivered
