"""
In-memory notification inbox.

Order status changes are published here and fanned out to the buyer and to
every seller with items in the order. Inboxes are keyed by account reference
(``buyer:12``) because account ids are only unique per account table.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from gule.models import OrderStatus
from gule.observability import increment_counter, record_event


@dataclass
class Notification:
    id: str
    recipient: str
    notification_type: str
    title: str
    message: str
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


class NotificationService:
    """Process-wide singleton; bounded inbox per recipient, newest first."""

    _instance: Optional["NotificationService"] = None
    _lock: Lock = Lock()

    def __new__(cls) -> "NotificationService":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._notifications: Dict[str, List[Notification]] = defaultdict(list)
        self._ids = count(1)
        self._max_notifications_per_user: int = 50
        self.logger = logging.getLogger(__name__)
        self._initialized = True

    def add_notification(
        self,
        recipient: str,
        notification_type: str,
        title: str,
        message: str,
        reference_id: Optional[int] = None,
        reference_type: Optional[str] = None,
    ) -> Notification:
        with self._lock:
            notification = Notification(
                id=f"notif_{next(self._ids)}",
                recipient=recipient,
                notification_type=notification_type,
                title=title,
                message=message,
                reference_id=reference_id,
                reference_type=reference_type,
            )
            inbox = self._notifications[recipient]
            inbox.insert(0, notification)
            del inbox[self._max_notifications_per_user:]

        increment_counter("notifications_created_total", labels={"type": notification_type})
        self.logger.info("Notification created for %s: %s", recipient, title)
        return notification

    def get_notifications(self, recipient: str, unread_only: bool = False, limit: int = 20) -> List[Dict[str, Any]]:
        notifications = self._notifications.get(recipient, [])
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, recipient: str) -> int:
        return sum(1 for n in self._notifications.get(recipient, []) if not n.read)

    def mark_as_read(self, recipient: str, notification_id: str) -> bool:
        for notification in self._notifications.get(recipient, []):
            if notification.id == notification_id:
                if not notification.read:
                    notification.read = True
                    notification.read_at = datetime.now(timezone.utc)
                return True
        return False

    def mark_all_as_read(self, recipient: str) -> int:
        now = datetime.now(timezone.utc)
        marked = 0
        for notification in self._notifications.get(recipient, []):
            if not notification.read:
                notification.read = True
                notification.read_at = now
                marked += 1
        return marked

    def clear(self) -> None:
        """Drop every inbox (tests)."""
        with self._lock:
            self._notifications.clear()


ORDER_STATUS_LABELS = {
    OrderStatus.PENDING.value: "Pending",
    OrderStatus.CONFIRMED.value: "Confirmed",
    OrderStatus.PROCESSING.value: "Processing",
    OrderStatus.SHIPPED.value: "Shipped",
    OrderStatus.DELIVERED.value: "Delivered",
    OrderStatus.COMPLETED.value: "Completed",
    OrderStatus.CANCELLED.value: "Cancelled",
    OrderStatus.REFUNDED.value: "Refunded",
}


def publish_order_status_change(
    order_id: int,
    order_number: str,
    buyer_id: int,
    seller_ids: Iterable[int],
    old_status: str,
    new_status: str,
) -> None:
    """Publish an order status change to the buyer and the order's sellers."""
    new_label = ORDER_STATUS_LABELS.get(new_status, new_status)
    record_event(
        "order_status_changed",
        {
            "order_id": order_id,
            "buyer_id": buyer_id,
            "old_status": old_status,
            "new_status": new_status,
        },
    )
    increment_counter(
        "order_status_transitions_total",
        labels={"from_status": old_status or "none", "to_status": new_status},
    )

    service = NotificationService()
    if old_status:
        buyer_message = (
            f"Your order {order_number} changed from "
            f"{ORDER_STATUS_LABELS.get(old_status, old_status)} to {new_label}."
        )
    else:
        buyer_message = f"Your order {order_number} has been placed."
    service.add_notification(
        recipient=f"buyer:{buyer_id}",
        notification_type="order_status",
        title=f"Order {order_number} {new_label}",
        message=buyer_message,
        reference_id=order_id,
        reference_type="order",
    )
    for seller_id in sorted(set(seller_ids)):
        service.add_notification(
            recipient=f"seller:{seller_id}",
            notification_type="order_status",
            title=f"Order {order_number} {new_label}",
            message=f"Order {order_number} is now {new_label}.",
            reference_id=order_id,
            reference_type="order",
        )
