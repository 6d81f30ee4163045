"""Tests for the notification presentation table and delivery service."""

from datetime import datetime, timedelta, timezone

import pytest

from shopgate.service.errors import ValidationError
from shopgate.service.notifications import (
    NOTIFICATION_CONFIGS,
    NotificationService,
    NotificationType,
    get_notification_config,
    relative_time,
)
from shopgate.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def service(store):
    return NotificationService(store)


class TestConfigTable:
    def test_every_type_has_presentation(self):
        assert set(NOTIFICATION_CONFIGS) == set(NotificationType)

    def test_item_is_rendered_into_message(self):
        config = get_notification_config("cart")
        assert config.title == "Added to Cart"
        assert config.render("Blue Mug") == "Blue Mug added to your cart"

    def test_only_coupon_and_announcement_broadcast(self):
        broadcast = {t for t, c in NOTIFICATION_CONFIGS.items() if c.broadcast}
        assert broadcast == {NotificationType.COUPON, NotificationType.ANNOUNCEMENT}

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValidationError):
            get_notification_config("carrier_pigeon")


class TestRelativeTime:
    NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "delta,expected",
        [
            (timedelta(seconds=5), "5s ago"),
            (timedelta(minutes=3), "3m ago"),
            (timedelta(hours=2), "2h ago"),
            (timedelta(days=6), "6d ago"),
            (timedelta(days=8), "2026-03-02"),
        ],
    )
    def test_buckets(self, delta, expected):
        assert relative_time(self.NOW - delta, self.NOW) == expected


class TestService:
    def test_personal_notification(self, service, store):
        user = store.create_user("a@example.com", "alice")
        service.push(NotificationType.WISHLIST, user_id=user.id, item="Lamp")

        items = service.list_for_user(user.id)
        assert len(items) == 1
        assert items[0]["message"] == "Lamp added to your wishlist"
        assert items[0]["icon_class"] == "fas fa-heart"
        assert items[0]["viewed"] is False

    def test_personal_notification_needs_a_user(self, service):
        with pytest.raises(ValidationError):
            service.push(NotificationType.PROFILE)

    def test_broadcast_reaches_every_user(self, service, store):
        users = [store.create_user(f"u{i}@example.com", f"user{i}") for i in range(3)]
        created = service.push(NotificationType.COUPON, item="SAVE10 for 10% off")

        assert len(created) == 3
        for user in users:
            assert service.list_for_user(user.id)[0]["message"] == "SAVE10 for 10% off"

    def test_mark_viewed(self, service, store):
        user = store.create_user("a@example.com", "alice")
        service.push(NotificationType.PROFILE, user_id=user.id)
        service.push(NotificationType.CART, user_id=user.id, item="Mug")

        assert service.mark_viewed(user.id) == 2
        assert all(item["viewed"] for item in service.list_for_user(user.id))

    def test_delete_old_keeps_recent(self, store):
        user = store.create_user("a@example.com", "alice")
        NotificationService(store).push(NotificationType.PROFILE, user_id=user.id)

        future = datetime.now(timezone.utc) + timedelta(days=8)
        later = NotificationService(store, clock=lambda: future)
        assert NotificationService(store).delete_old() == 0
        assert later.delete_old() == 1
        assert later.list_for_user(user.id) == []
