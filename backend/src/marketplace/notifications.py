"""
Notification and geolocation collaborators.

Both are best-effort from the engine's point of view: a failed notification
or a missing position never fails or rolls back a job transition.
"""
import datetime
from typing import Any, Dict, Optional, Protocol, Tuple

from .config import config
from .logging import get_logger
from .sqs import send_message

logger = get_logger('notifications')

Coordinates = Tuple[float, float]


class Notifier(Protocol):
    def notify(self, party_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        ...


class GeolocationProvider(Protocol):
    def current_coordinates(self, fulfiller_id: str) -> Optional[Coordinates]:
        ...


class SqsNotifier:
    """
    Publishes notification requests to the notifications queue.

    A downstream consumer turns them into push notifications and emails.
    """

    def __init__(self, queue_url: str = None):
        self.queue_url = queue_url if queue_url is not None else config.NOTIFICATIONS_QUEUE_URL

    def notify(self, party_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        if not self.queue_url:
            logger.warning(f"No NOTIFICATIONS_QUEUE_URL configured, dropping {event_type} for {party_id}")
            return False
        message = {
            'partyId': party_id,
            'eventType': event_type,
            'payload': payload,
            'sentAt': datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        # FIFO queues keep each party's notifications in order
        group_id = party_id if self.queue_url.endswith('.fifo') else None
        return send_message(self.queue_url, message, group_id=group_id)


class NullNotifier:
    """Notifier that only logs. Used when no queue is wired up."""

    def notify(self, party_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        logger.info(f"Notification {event_type} for {party_id}: {payload}")
        return True
