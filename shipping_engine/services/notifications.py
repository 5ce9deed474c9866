"""
Shipment Notification Hooks

Defines the interface for shipment event notifications (created, cancelled,
status changes). Rendering and delivery belong to the provider; the engine
only fires the event and never fails because of it.
"""

import logging
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    """Protocol for notification providers."""

    async def send(
        self,
        shipment_id: str,
        event_type: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Notify interested parties about a shipment event."""
        ...


class LoggingNotificationSender:
    """Mock provider for development/testing."""

    async def send(
        self,
        shipment_id: str,
        event_type: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        details = details or {}
        logger.info(
            f"[MOCK NOTIFY] Shipment {shipment_id} {event_type}\n"
            f"  Carrier: {details.get('carrier', '-')}\n"
            f"  Tracking: {details.get('tracking_number', '-')}"
        )
        return True


async def notify_shipment_event(
    sender: NotificationSender,
    shipment_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    """Send a notification; failures are logged and reported as False."""
    try:
        return await sender.send(shipment_id, event_type, details)
    except Exception as e:
        logger.warning(
            f"Failed to send {event_type} notification for shipment {shipment_id}: {e}",
            exc_info=True,
            extra={"shipment_id": shipment_id, "event_type": event_type},
        )
        return False
