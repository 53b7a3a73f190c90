"""
Loan desk composition root

Wires storage, lifecycle, events, notifications, audit and directories
from configuration.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditTrail
from .config import LoanDeskConfig, get_config
from .directories import StorageCustomerDirectory, StorageShopkeeperDirectory
from .errors import error_response
from .events import EventDispatcher
from .lifecycle import LoanStateMachine
from .logging_config import setup_logging
from .notifications import (
    ChannelProvider, InAppChannelProvider, LogChannelProvider,
    NotificationDispatcher, NotificationRules, WebhookChannelProvider
)
from .service import LoanService
from .storage import StorageInterface, create_storage
from .uploads import ImageStore


class LoanDeskSystem:
    """Loan desk with all components initialized"""

    def __init__(
        self,
        config: Optional[LoanDeskConfig] = None,
        storage: Optional[StorageInterface] = None,
        image_store: Optional[ImageStore] = None,
        extra_channels: Optional[List[ChannelProvider]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, self.config.log_format)

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url, timeout=self.config.write_timeout_seconds
        )

        # Directories
        self.shopkeepers = StorageShopkeeperDirectory(
            self.storage, max_retries=self.config.max_write_retries
        )
        self.customers = StorageCustomerDirectory(self.storage)

        # Events and subscribers
        self.events = EventDispatcher()

        self.in_app = InAppChannelProvider(self.storage)
        channels: List[ChannelProvider] = [self.in_app, LogChannelProvider()]
        if self.config.notification_webhook_url:
            channels.append(WebhookChannelProvider(
                self.config.notification_webhook_url,
                timeout=self.config.notification_timeout_seconds
            ))
        channels.extend(extra_channels or [])
        self.notifications = NotificationDispatcher(channels, async_mode=self.config.async_notifications)
        self.notification_rules = NotificationRules(self.notifications)
        self.events.subscribe_all(self.notification_rules.handle_event)

        self.audit_trail: Optional[AuditTrail] = None
        if self.config.enable_audit_logging:
            self.audit_trail = AuditTrail(self.storage)
            self.events.subscribe_all(self.audit_trail.record_event)

        # Loan core
        self.state_machine = LoanStateMachine(
            payable_statuses=self.config.payable_statuses,
            require_rejection_reason=self.config.require_rejection_reason,
            clock=clock
        )
        self.loans = LoanService(
            self.storage,
            self.state_machine,
            self.events,
            config=self.config,
            shopkeepers=self.shopkeepers,
            customers=self.customers,
            image_store=image_store,
            clock=clock
        )

        self.notifications.start()

    def error_response(self, exc: BaseException) -> Dict[str, Any]:
        """Caller-facing error body; tracebacks only when debug is configured"""
        return error_response(exc, debug=self.config.debug)

    def close(self) -> None:
        """Flush queued notifications and release storage"""
        self.notifications.stop()
        self.storage.close()

    def __enter__(self) -> 'LoanDeskSystem':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
