"""
Notification Dispatcher Module

Client-facing notifications raised by servicing events (payment confirmation,
arrears reclassification). Delivery itself belongs to the communications
service; this module only hands the request over.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import logging
import uuid

import requests

from .errors import CollaboratorFailureError
from .storage import to_storage_value


class NotificationType(Enum):
    """Types of notifications"""
    PAYMENT_CONFIRMATION = "PAYMENT_CONFIRMATION"
    CLASSIFICATION_CHANGE = "CLASSIFICATION_CHANGE"


class NotificationDispatcher(ABC):
    """Abstract notification dispatcher"""

    @abstractmethod
    def send_notification(self, loan_id: str, client_id: str,
                          notification_type: NotificationType,
                          payload: Dict[str, Any]) -> None:
        """
        Send one notification.

        Raises:
            CollaboratorFailureError: If the notification could not be handed over
        """
        pass


class LogNotificationDispatcher(NotificationDispatcher):
    """Logs notifications instead of sending them (development and tests)"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("loan_servicing.notifications")
        self.sent = []

    def send_notification(self, loan_id, client_id, notification_type, payload):
        self.logger.info(
            f"{notification_type.value} for client {client_id} on loan {loan_id}: "
            f"{to_storage_value(payload)}"
        )
        self.sent.append((loan_id, client_id, notification_type, payload))


class WebhookNotificationDispatcher(NotificationDispatcher):
    """Posts notification requests to the communications service"""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send_notification(self, loan_id, client_id, notification_type, payload):
        body = {
            "notification_id": str(uuid.uuid4()),
            "template_code": notification_type.value,
            "recipient_id": client_id,
            "recipient_type": "Client",
            "channel": "SMS",
            "loan_id": loan_id,
            "parameters": to_storage_value(payload),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        try:
            response = self.session.post(
                self.url,
                json=body,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise CollaboratorFailureError(
                f"Notification {notification_type.value} for loan {loan_id} failed: {e}"
            ) from e
