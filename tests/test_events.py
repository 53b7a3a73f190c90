"""
Tests for the Event System (Observer Pattern)

Tests event payloads, subscription and publishing, and the guarantee that a
failing subscriber never reaches the publisher.
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from loan_desk.events import DomainEvent, EventDispatcher, EventPayload


def make_event(event_type: DomainEvent = DomainEvent.LOAN_CREATED) -> EventPayload:
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id="loan-1",
        data={"loan_id": "LN12345678", "loan_amount": "40000.00"},
        actor_id="shop-1",
        actor_role="shopkeeper"
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = make_event()

        assert event.event_type == DomainEvent.LOAN_CREATED
        assert event.entity_id == "loan-1"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        original = make_event(DomainEvent.PAYMENT_COLLECTED)
        data = original.to_dict()

        assert data["event_type"] == "loan.payment_collected"
        assert data["actor_role"] == "shopkeeper"
        assert EventPayload.from_dict(data) == original


class TestEventDispatcher:
    """Test subscription and publishing"""

    def setup_method(self):
        """Set up test fixtures"""
        self.dispatcher = EventDispatcher()

    def test_subscribe_and_publish(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_CREATED, handler)

        event = make_event()
        self.dispatcher.publish(event)
        self.dispatcher.publish(make_event(DomainEvent.LOAN_APPROVED))

        handler.assert_called_once_with(event)

    def test_global_handler_sees_everything(self):
        handler = Mock()
        self.dispatcher.subscribe_all(handler)

        self.dispatcher.publish_all([make_event(), make_event(DomainEvent.LOAN_PAID)])

        assert handler.call_count == 2

    def test_failing_handler_is_isolated(self, caplog):
        failing = Mock(side_effect=RuntimeError("boom"))
        failing.__name__ = "failing"
        healthy = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_CREATED, failing)
        self.dispatcher.subscribe_all(healthy)

        with caplog.at_level("ERROR", logger="loan_desk.events"):
            self.dispatcher.publish(make_event())

        healthy.assert_called_once()
        assert "Error in event handler failing" in caplog.text

    def test_unsubscribe(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_CREATED, handler)
        self.dispatcher.unsubscribe(DomainEvent.LOAN_CREATED, handler)

        self.dispatcher.publish(make_event())
        handler.assert_not_called()

    def test_handler_count_and_clear(self):
        self.dispatcher.subscribe(DomainEvent.LOAN_CREATED, Mock())
        self.dispatcher.subscribe(DomainEvent.LOAN_PAID, Mock())
        self.dispatcher.subscribe_all(Mock())

        assert self.dispatcher.get_handler_count(DomainEvent.LOAN_CREATED) == 1
        assert self.dispatcher.get_handler_count() == 3

        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0
