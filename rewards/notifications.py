import logging
import threading
from typing import Optional, Protocol
from uuid import UUID

from .models import NotificationEvent, NotificationType

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def send(self, event: NotificationEvent) -> None:
        ...


class InMemoryNotificationSink:
    """Collects events; the dispatcher that renders them lives elsewhere."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: list[NotificationEvent] = []

    def send(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, type: NotificationType) -> list[NotificationEvent]:
        return [e for e in self.events if e.type == type]


def emit(
    sink: Optional[NotificationSink],
    account_id: UUID,
    type: NotificationType,
    **payload,
) -> bool:
    """Send a notification after the ledger work is committed.

    Sink failures are logged and reported as ``False``; they never undo the
    write that triggered the event.
    """
    if sink is None:
        return False
    try:
        sink.send(NotificationEvent(account_id=account_id, type=type, payload=payload))
        return True
    except Exception as e:
        logger.error(f"[notifications.emit] Failed to send {type.value} to {account_id}: {e}", exc_info=True)
        return False
