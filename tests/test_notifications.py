"""
Test suite for notifications

Tests notification records, channel providers, the inline and queued
dispatcher, and the rules that turn loan events into notifications.
"""

import pytest
import threading
from decimal import Decimal
from unittest.mock import Mock, patch

import requests

from loan_desk.errors import DependencyError
from loan_desk.events import DomainEvent, EventDispatcher, EventPayload
from loan_desk.notifications import (
    ChannelProvider, InAppChannelProvider, LogChannelProvider, Notification,
    NotificationDispatcher, NotificationRules, NotificationSeverity,
    NotificationType, WebhookChannelProvider
)
from loan_desk.storage import InMemoryStorage


def loan_payload(event_type: DomainEvent, **data) -> EventPayload:
    payload = {
        "loan_id": "LN12345678",
        "client_name": "Ravi Kumar",
        "client_phone": "9876543210",
        "loan_amount": "40000.00",
        "shopkeeper_id": "shop-1",
        "customer_id": None,
        "status": "Pending",
    }
    payload.update(data)
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id="loan-1",
        data=payload,
        actor_id="shop-1",
        actor_role="shopkeeper"
    )


class RecordingChannel(ChannelProvider):
    """Collects delivered notifications"""

    name = "recording"

    def __init__(self):
        self.sent = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)


class FailingChannel(ChannelProvider):
    name = "failing"

    def send(self, notification: Notification) -> None:
        raise DependencyError("channel unavailable")


class TestNotification:
    """Test the notification record"""

    def test_round_trip(self):
        notification = Notification.create(
            NotificationType.LOAN_APPROVED, "Loan Approved", "approved",
            loan_id="LN1", loan_amount=Decimal("40000.00"), metadata={"k": "v"}
        )
        data = notification.to_dict()

        assert data["type"] == "loan_approved"
        assert data["loan_amount"] == "40000.00"
        restored = Notification.from_dict(data)
        assert restored.notification_type == NotificationType.LOAN_APPROVED
        assert restored.loan_amount == Decimal("40000.00")
        assert restored.severity == NotificationSeverity.MEDIUM
        assert not restored.read


class TestInAppChannel:
    """Test storage-backed in-app notifications"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.channel = InAppChannelProvider(self.storage)

    def test_list_for_role(self):
        self.channel.send(Notification.create(NotificationType.LOAN_APPROVED, "a", "for verifiers", target_role="verifier"))
        self.channel.send(Notification.create(NotificationType.LOAN_APPROVED, "b", "for admins", target_role="admin"))
        self.channel.send(Notification.create(NotificationType.LOAN_APPROVED, "c", "for everyone"))

        assert {n.title for n in self.channel.list_for_role("verifier")} == {"a", "c"}
        assert len(self.channel.list_for_role()) == 3

    def test_mark_read(self):
        notification = Notification.create(NotificationType.LOAN_APPROVED, "a", "msg", target_role="admin")
        self.channel.send(notification)

        assert self.channel.mark_read(notification.id)
        assert self.channel.list_for_role("admin", unread_only=True) == []
        assert not self.channel.mark_read("missing")


class TestWebhookChannel:
    """Test webhook delivery through requests"""

    def setup_method(self):
        """Set up test fixtures"""
        self.channel = WebhookChannelProvider("https://hooks.example.com/loans", timeout=2.0)
        self.notification = Notification.create(
            NotificationType.LOAN_REJECTED, "Loan Rejected", "rejected", loan_id="LN1"
        )

    @patch("loan_desk.notifications.requests.post")
    def test_posts_json_payload(self, mock_post):
        mock_post.return_value = Mock(status_code=200)

        self.channel.send(self.notification)

        args, kwargs = mock_post.call_args
        assert args == ("https://hooks.example.com/loans",)
        assert kwargs["timeout"] == 2.0
        assert kwargs["json"]["type"] == "loan_rejected"
        assert kwargs["json"]["loan_id"] == "LN1"

    @patch("loan_desk.notifications.requests.post")
    def test_http_error_becomes_dependency_error(self, mock_post):
        response = Mock()
        response.raise_for_status.side_effect = requests.HTTPError("503 Service Unavailable")
        mock_post.return_value = response

        with pytest.raises(DependencyError) as exc_info:
            self.channel.send(self.notification)
        assert exc_info.value.retryable

    @patch("loan_desk.notifications.requests.post")
    def test_timeout_becomes_dependency_error(self, mock_post):
        mock_post.side_effect = requests.Timeout("timed out")

        with pytest.raises(DependencyError):
            self.channel.send(self.notification)


class TestNotificationDispatcher:
    """Test fan-out and failure isolation"""

    def test_inline_delivery_to_every_channel(self):
        first, second = RecordingChannel(), RecordingChannel()
        dispatcher = NotificationDispatcher([first, second])

        dispatcher.notify(Notification.create(NotificationType.LOAN_APPROVED, "t", "m"))

        assert len(first.sent) == len(second.sent) == 1
        assert dispatcher.delivered_count == 2

    def test_failing_channel_does_not_block_others(self):
        recording = RecordingChannel()
        dispatcher = NotificationDispatcher([FailingChannel(), recording])

        dispatcher.notify(Notification.create(NotificationType.LOAN_APPROVED, "t", "m"))

        assert len(recording.sent) == 1
        assert dispatcher.failure_count == 1
        assert dispatcher.delivered_count == 1

    def test_async_delivery_drains(self):
        recording = RecordingChannel()
        dispatcher = NotificationDispatcher([recording], async_mode=True)
        dispatcher.start()
        try:
            for i in range(5):
                dispatcher.notify(Notification.create(NotificationType.LOAN_APPROVED, f"t{i}", "m"))
            dispatcher.drain()
            assert [n.title for n in recording.sent] == [f"t{i}" for i in range(5)]
        finally:
            dispatcher.stop()

    def test_full_outbox_drops_and_counts(self):
        release = threading.Event()

        class BlockingChannel(ChannelProvider):
            name = "blocking"

            def send(self, notification):
                release.wait(2)

        dispatcher = NotificationDispatcher([BlockingChannel()], async_mode=True, max_queue_size=1)
        dispatcher.start()
        try:
            for i in range(4):
                dispatcher.notify(Notification.create(NotificationType.LOAN_APPROVED, f"t{i}", "m"))
            assert dispatcher.failure_count >= 1
        finally:
            release.set()
            dispatcher.stop()

    def test_log_channel(self, caplog):
        dispatcher = NotificationDispatcher([LogChannelProvider()])
        with caplog.at_level("INFO", logger="loan_desk.notifications"):
            dispatcher.notify(Notification.create(
                NotificationType.LOAN_APPROVED, "Title", "Body", target_role="admin"
            ))
        assert "admin: Title | Body" in caplog.text


class TestNotificationRules:
    """Test which events raise which notifications"""

    def setup_method(self):
        """Set up test fixtures"""
        self.channel = RecordingChannel()
        self.rules = NotificationRules(NotificationDispatcher([self.channel]))

    def test_new_application_goes_to_verifiers(self):
        notification = self.rules.handle_event(loan_payload(DomainEvent.LOAN_CREATED))

        assert notification.notification_type == NotificationType.NEW_LOAN_APPLICATION
        assert notification.target_role == "verifier"
        assert notification.message == "New loan application from Ravi Kumar (LN12345678) - Amount: ₹40,000"
        assert self.channel.sent == [notification]

    def test_verified_loan_needs_kyc_check(self):
        notification = self.rules.handle_event(loan_payload(DomainEvent.LOAN_VERIFIED, status="Verified"))

        assert notification.title == "KYC Verification Required"
        assert notification.target_role == "admin"
        assert notification.client_id == "9876543210"

    def test_approval_is_broadcast(self):
        notification = self.rules.handle_event(loan_payload(DomainEvent.LOAN_APPROVED))

        assert notification.title == "Loan Approved"
        assert notification.target_role is None
        assert notification.severity == NotificationSeverity.MEDIUM

    def test_rejection_includes_reason(self):
        notification = self.rules.handle_event(
            loan_payload(DomainEvent.LOAN_REJECTED, comment="Docs insufficient")
        )

        assert notification.target_role == "shopkeeper"
        assert notification.message.endswith(": Docs insufficient")
        assert notification.metadata["shopkeeper_id"] == "shop-1"

    def test_penalty_is_high_severity(self):
        notification = self.rules.handle_event(loan_payload(
            DomainEvent.PENALTY_APPLIED,
            entry={"amount": "500.00", "reason": "EMI Overdue"},
            total_penalty="500.00"
        ))

        assert notification.notification_type == NotificationType.PAYMENT_OVERDUE
        assert notification.severity == NotificationSeverity.HIGH
        assert notification.target_role == "collections"
        assert "₹500" in notification.message

    @pytest.mark.parametrize("event_type", [
        DomainEvent.PAYMENT_COLLECTED, DomainEvent.DUE_DATE_SET, DomainEvent.LOAN_DELETED
    ])
    def test_events_without_rule(self, event_type):
        assert self.rules.handle_event(loan_payload(event_type)) is None
        assert self.channel.sent == []

    def test_subscribed_through_event_dispatcher(self):
        events = EventDispatcher()
        events.subscribe_all(self.rules.handle_event)

        events.publish(loan_payload(DomainEvent.LOAN_CREATED))

        assert len(self.channel.sent) == 1
