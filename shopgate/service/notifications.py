from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from shopgate.logging import get_logger
from shopgate.service.errors import ValidationError
from shopgate.storage.common import AuthStore
from shopgate.storage.models import Notification

logger = get_logger(__name__)

RETENTION = timedelta(days=7)


class NotificationType(str, Enum):
    WISHLIST = "wishlist"
    CART = "cart"
    PROFILE = "profile"
    TWO_FACTOR_ENABLE = "2fa_enable"
    TWO_FACTOR_DISABLE = "2fa_disable"
    ORDER_CREATED = "order_created"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_FAILED = "order_failed"
    COUPON = "coupon"
    ANNOUNCEMENT = "announcement"
    PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class NotificationConfig:
    title: str
    message: str
    icon_class: str
    icon_background: str
    broadcast: bool = False

    def render(self, item: str | None) -> str:
        return self.message.format(item=item or "")


NOTIFICATION_CONFIGS: Dict[NotificationType, NotificationConfig] = {
    NotificationType.WISHLIST: NotificationConfig(
        "Added to Wishlist", "{item} added to your wishlist", "fas fa-heart", "#3b82f6"
    ),
    NotificationType.CART: NotificationConfig(
        "Added to Cart", "{item} added to your cart", "fas fa-shopping-cart", "#10b981"
    ),
    NotificationType.PROFILE: NotificationConfig(
        "Profile Updated",
        "Your profile information was updated",
        "fas fa-user",
        "#f59e0b",
    ),
    NotificationType.TWO_FACTOR_ENABLE: NotificationConfig(
        "2FA Enabled",
        "Two-factor authentication has been enabled",
        "fas fa-shield-alt",
        "#8b5cf6",
    ),
    NotificationType.TWO_FACTOR_DISABLE: NotificationConfig(
        "2FA Disabled",
        "Two-factor authentication has been disabled",
        "fas fa-shield-alt",
        "#ef4444",
    ),
    NotificationType.ORDER_CREATED: NotificationConfig(
        "Order Created",
        "Order for {item} has been created",
        "fas fa-shopping-bag",
        "#6366f1",
    ),
    NotificationType.ORDER_SHIPPED: NotificationConfig(
        "Order Shipped", "Order for {item} has been shipped", "fas fa-truck", "#06b6d4"
    ),
    NotificationType.ORDER_DELIVERED: NotificationConfig(
        "Order Delivered",
        "Order for {item} has been delivered",
        "fas fa-check-circle",
        "#22c55e",
    ),
    NotificationType.ORDER_CANCELLED: NotificationConfig(
        "Order Cancelled",
        "Order for {item} has been cancelled",
        "fas fa-times-circle",
        "#ef4444",
    ),
    NotificationType.ORDER_FAILED: NotificationConfig(
        "Order Failed",
        "Order for {item} has been failed",
        "fas fa-times-circle",
        "#ef4444",
    ),
    NotificationType.COUPON: NotificationConfig(
        "New Coupon Available", "{item}", "fas fa-ticket-alt", "#ec4899", broadcast=True
    ),
    NotificationType.ANNOUNCEMENT: NotificationConfig(
        "Announcement", "{item}", "fas fa-bullhorn", "#f97316", broadcast=True
    ),
    NotificationType.PASSWORD_RESET: NotificationConfig(
        "Password Reset",
        "Your password has been successfully reset",
        "fas fa-key",
        "#4b5563",
    ),
}

_missing = set(NotificationType) - set(NOTIFICATION_CONFIGS)
if _missing:
    raise RuntimeError(
        "notification types without presentation config: "
        + ", ".join(sorted(t.value for t in _missing))
    )


def get_notification_config(notification_type: str | NotificationType) -> NotificationConfig:
    try:
        return NOTIFICATION_CONFIGS[NotificationType(notification_type)]
    except ValueError:
        raise ValidationError(
            "Invalid notification type", detail={"type": str(notification_type)}
        )


def relative_time(created_at: datetime, now: datetime | None = None) -> str:
    """Render a timestamp as ``Ns ago``/``Nm ago``/``Nh ago``/``Nd ago``, else a date."""
    now = now or datetime.now(timezone.utc)
    seconds = int((now - created_at).total_seconds())
    if seconds < 60:
        return f"{max(seconds, 0)}s ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days < 7:
        return f"{days}d ago"
    return created_at.strftime("%Y-%m-%d")


class NotificationService:
    def __init__(
        self,
        store: AuthStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def push(
        self,
        notification_type: str | NotificationType,
        *,
        user_id: Optional[str] = None,
        item: Optional[str] = None,
    ) -> List[Notification]:
        """Create a notification; coupon and announcement types go to every user."""
        config = get_notification_config(notification_type)
        if config.broadcast:
            recipients = self.store.list_user_ids()
        elif user_id:
            recipients = [user_id]
        else:
            raise ValidationError("user_id is required for this notification type")
        created = self.store.create_notifications(
            recipients,
            type=NotificationType(notification_type).value,
            title=config.title,
            message=config.render(item),
            icon_class=config.icon_class,
            icon_background=config.icon_background,
        )
        logger.info(
            "notification_pushed",
            notification_type=NotificationType(notification_type).value,
            recipients=len(created),
        )
        return created

    def list_for_user(self, user_id: str, limit: int = 50) -> List[dict]:
        now = self._clock()
        return [
            {
                "id": note.id,
                "type": note.type,
                "title": note.title,
                "message": note.message,
                "icon_class": note.icon_class,
                "icon_background": note.icon_background,
                "viewed": note.viewed,
                "created_at": note.created_at.isoformat(),
                "time_ago": relative_time(note.created_at, now),
            }
            for note in self.store.list_notifications(user_id, limit=limit)
        ]

    def mark_viewed(self, user_id: str) -> int:
        return self.store.mark_notifications_viewed(user_id)

    def delete_old(self) -> int:
        removed = self.store.delete_notifications_before(self._clock() - RETENTION)
        if removed:
            logger.info("notifications_pruned", removed=removed)
        return removed
