"""
Servicing Engine Module

Builds the storage backend, collaborators and services from configuration
and exposes them as one object for the HTTP layer and batch jobs.
"""

from typing import Optional
import logging

from .arrears import ArrearsClassificationService
from .audit import AuditSink, AuditTrail
from .config import ServicingConfig, get_config
from .currency import Currency
from .notifications import NotificationDispatcher, LogNotificationDispatcher, WebhookNotificationDispatcher
from .outbox import CollaboratorOutbox
from .payments import PaymentProcessingService
from .reporting import PortfolioReporter
from .schedules import RepaymentScheduleService
from .storage import StorageInterface, create_storage


class ServicingEngine:
    """Loan servicing engine with all components initialized"""

    def __init__(
        self,
        config: Optional[ServicingConfig] = None,
        storage: Optional[StorageInterface] = None,
        audit_sink: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None
    ):
        self.config = config or get_config()
        self.logger = logging.getLogger("loan_servicing.engine")

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Collaborators
        self.audit_sink = audit_sink or AuditTrail(self.storage)
        if notifier is not None:
            self.notifier = notifier
        elif self.config.notification_webhook_url:
            self.notifier = WebhookNotificationDispatcher(
                self.config.notification_webhook_url,
                timeout=self.config.notification_timeout
            )
        else:
            self.notifier = LogNotificationDispatcher()
        self.outbox = CollaboratorOutbox(
            audit_sink=self.audit_sink,
            notifier=self.notifier,
            enable_audit=self.config.enable_audit_logging,
            enable_notifications=self.config.enable_notifications
        )

        # Services
        retries = self.config.max_concurrency_retries
        self.schedules = RepaymentScheduleService(
            self.storage, self.outbox, retries,
            default_currency=Currency[self.config.default_currency.upper()]
        )
        self.payments = PaymentProcessingService(self.storage, self.schedules, self.outbox, retries)
        self.arrears = ArrearsClassificationService(
            self.storage, self.schedules, self.outbox, retries,
            workers=self.config.classification_workers
        )
        self.reporter = PortfolioReporter(self.schedules, self.arrears, self.payments)

        self.logger.info(
            f"Servicing engine ready (storage={type(self.storage).__name__}, "
            f"notifier={type(self.notifier).__name__})"
        )

    def close(self) -> None:
        self.storage.close()
