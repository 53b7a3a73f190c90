"""
Notification Module

Back-office alerts raised by loan events: new applications for verifiers,
KYC checks for administrators, approvals, rejections and overdue penalties.
Delivery is fire-and-forget. A failing channel is logged and counted, never
raised into the loan operation that caused it.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import logging
import queue
import threading
import uuid

import requests

from .amounts import format_inr, to_amount
from .errors import DependencyError
from .events import DomainEvent, EventPayload
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("loan_desk.notifications")


class NotificationType(Enum):
    """Types of notifications"""
    NEW_LOAN_APPLICATION = "new_loan_application"
    KYC_REQUIRED = "kyc_required"
    PAYMENT_OVERDUE = "payment_overdue"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"


class NotificationSeverity(Enum):
    """Notification severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    notification_type: NotificationType
    title: str
    message: str
    severity: NotificationSeverity = NotificationSeverity.MEDIUM
    target_role: Optional[str] = None   # None means visible to every back-office role
    loan_id: Optional[str] = None
    client_name: Optional[str] = None
    client_id: Optional[str] = None
    loan_amount: Optional[Decimal] = None
    read: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, notification_type: NotificationType, title: str, message: str, **kwargs) -> 'Notification':
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            title=title,
            message=message,
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'type': self.notification_type.value,
            'title': self.title,
            'message': self.message,
            'severity': self.severity.value,
            'target_role': self.target_role,
            'loan_id': self.loan_id,
            'client_name': self.client_name,
            'client_id': self.client_id,
            'loan_amount': str(self.loan_amount) if self.loan_amount is not None else None,
            'read': self.read,
            'metadata': self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            notification_type=NotificationType(data['type']),
            title=data['title'],
            message=data['message'],
            severity=NotificationSeverity(data.get('severity', 'medium')),
            target_role=data.get('target_role'),
            loan_id=data.get('loan_id'),
            client_name=data.get('client_name'),
            client_id=data.get('client_id'),
            loan_amount=Decimal(data['loan_amount']) if data.get('loan_amount') else None,
            read=data.get('read', False),
            metadata=data.get('metadata', {})
        )


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    name = "channel"

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver a notification. Raises DependencyError on failure."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the log, for development"""

    name = "log"

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger

    def send(self, notification: Notification) -> None:
        self.logger.info(
            f"[{notification.severity.value.upper()}] {notification.target_role or 'all'}: "
            f"{notification.title} | {notification.message}"
        )


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider using storage"""

    name = "in_app"

    def __init__(self, storage: StorageInterface, table: str = "notifications"):
        self.storage = storage
        self.table = table

    def send(self, notification: Notification) -> None:
        self.storage.save(self.table, notification.id, notification.to_dict())

    def list_for_role(self, role: Optional[str] = None, unread_only: bool = False) -> List[Notification]:
        """Notifications visible to a role, newest first"""
        notifications = [Notification.from_dict(d) for d in self.storage.load_all(self.table)]
        if role is not None:
            notifications = [n for n in notifications if n.target_role in (None, role)]
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications

    def mark_read(self, notification_id: str) -> bool:
        data = self.storage.load(self.table, notification_id)
        if data is None:
            return False
        data['read'] = True
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table, notification_id, data)
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "severity": notification.severity.value,
            "title": notification.title,
            "message": notification.message,
            "target_role": notification.target_role,
            "loan_id": notification.loan_id,
            "timestamp": notification.created_at.isoformat(),
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise DependencyError(f"Webhook delivery failed: {e}", {"url": self.url}) from e


_STOP = object()


class NotificationDispatcher:
    """
    Fans notifications out to every registered channel.

    Inline mode delivers in the caller's thread; async mode hands off to a
    worker thread through a bounded outbox queue.
    """

    def __init__(self, channels: Optional[List[ChannelProvider]] = None,
                 async_mode: bool = False, max_queue_size: int = 1000):
        self.channels: List[ChannelProvider] = list(channels or [])
        self.async_mode = async_mode
        self._outbox: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue_size)
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.delivered_count = 0
        self.failure_count = 0

    def start(self) -> None:
        """Start the background worker (async mode only)"""
        if not self.async_mode or self._worker is not None:
            return
        self._worker = threading.Thread(target=self._run, name="notification-dispatcher", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the worker"""
        if self._worker is None:
            return
        self._outbox.put(_STOP)
        self._worker.join(timeout)
        self._worker = None

    def drain(self) -> None:
        """Block until every queued notification has been handled"""
        if self._worker is not None:
            self._outbox.join()

    def notify(self, notification: Notification) -> None:
        """Queue or deliver a notification. Never raises."""
        if self.async_mode and self._worker is not None:
            try:
                self._outbox.put_nowait(notification)
            except queue.Full:
                with self._lock:
                    self.failure_count += 1
                logger.warning(f"Notification outbox full, dropping {notification.notification_type.value} "
                               f"for loan {notification.loan_id}")
            return
        self._deliver(notification)

    def _run(self) -> None:
        while True:
            item = self._outbox.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._outbox.task_done()

    def _deliver(self, notification: Notification) -> None:
        for channel in self.channels:
            try:
                channel.send(notification)
            except Exception as e:
                with self._lock:
                    self.failure_count += 1
                logger.warning(
                    f"Notification channel {channel.name} failed for "
                    f"{notification.notification_type.value} on loan {notification.loan_id}: {e}"
                )
            else:
                with self._lock:
                    self.delivered_count += 1


class NotificationRules:
    """Turns published loan events into notifications"""

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher
        self._builders = {
            DomainEvent.LOAN_CREATED: self._new_application,
            DomainEvent.LOAN_VERIFIED: self._kyc_required,
            DomainEvent.LOAN_APPROVED: self._approved,
            DomainEvent.LOAN_REJECTED: self._rejected,
            DomainEvent.PENALTY_APPLIED: self._overdue,
        }

    def handle_event(self, event: EventPayload) -> Optional[Notification]:
        """Event dispatcher subscriber"""
        builder = self._builders.get(event.event_type)
        if builder is None:
            return None
        notification = builder(event.data)
        self.dispatcher.notify(notification)
        return notification

    @staticmethod
    def _amount(data: Dict[str, Any]) -> Decimal:
        return to_amount(data.get('loan_amount') or 0)

    def _new_application(self, data: Dict[str, Any]) -> Notification:
        amount = self._amount(data)
        return Notification.create(
            NotificationType.NEW_LOAN_APPLICATION,
            "New Loan Application",
            f"New loan application from {data['client_name']} ({data['loan_id']}) - Amount: {format_inr(amount)}",
            severity=NotificationSeverity.MEDIUM,
            target_role="verifier",
            loan_id=data['loan_id'],
            client_name=data['client_name'],
            loan_amount=amount
        )

    def _kyc_required(self, data: Dict[str, Any]) -> Notification:
        return Notification.create(
            NotificationType.KYC_REQUIRED,
            "KYC Verification Required",
            f"KYC verification needed for {data['client_name']} (Loan ID: {data['loan_id']})",
            severity=NotificationSeverity.MEDIUM,
            target_role="admin",
            loan_id=data['loan_id'],
            client_name=data['client_name'],
            client_id=data.get('client_phone')
        )

    def _approved(self, data: Dict[str, Any]) -> Notification:
        return Notification.create(
            NotificationType.LOAN_APPROVED,
            "Loan Approved",
            f"Loan for {data['client_name']} (ID: {data['loan_id']}) has been approved",
            severity=NotificationSeverity.MEDIUM,
            loan_id=data['loan_id'],
            client_name=data['client_name'],
            client_id=data.get('client_phone'),
            loan_amount=self._amount(data)
        )

    def _rejected(self, data: Dict[str, Any]) -> Notification:
        reason = data.get('comment')
        message = f"Loan for {data['client_name']} (ID: {data['loan_id']}) has been rejected"
        if reason:
            message += f": {reason}"
        return Notification.create(
            NotificationType.LOAN_REJECTED,
            "Loan Rejected",
            message,
            severity=NotificationSeverity.MEDIUM,
            target_role="shopkeeper",
            loan_id=data['loan_id'],
            client_name=data['client_name'],
            metadata={'shopkeeper_id': data.get('shopkeeper_id')}
        )

    def _overdue(self, data: Dict[str, Any]) -> Notification:
        entry = data.get('entry', {})
        penalty = to_amount(entry.get('amount') or 0)
        return Notification.create(
            NotificationType.PAYMENT_OVERDUE,
            "Payment Overdue",
            f"Penalty of {format_inr(penalty)} applied to {data['client_name']} ({data['loan_id']}): "
            f"{entry.get('reason', '')}",
            severity=NotificationSeverity.HIGH,
            target_role="collections",
            loan_id=data['loan_id'],
            client_name=data['client_name'],
            loan_amount=self._amount(data),
            metadata={'penalty': str(penalty), 'total_penalty': data.get('total_penalty')}
        )
