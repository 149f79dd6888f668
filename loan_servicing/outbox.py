"""
Collaborator Outbox Module

Fire-and-forget channel for audit and notification calls. The servicing
transaction has already committed by the time anything is emitted here, so a
collaborator failure is logged and parked for retry but never propagated.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Optional
import logging

from .audit import AuditEntry, AuditSink
from .logging_config import log_action
from .notifications import NotificationDispatcher, NotificationType


@dataclass
class FailedDelivery:
    """A collaborator call that failed and can be retried"""
    channel: str                     # "audit" or "notification"
    description: str
    error: str
    deliver: Callable[[], None]
    correlation_id: Optional[str] = None
    attempts: int = 1
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CollaboratorOutbox:
    """Delivers audit entries and notifications without failing the caller"""

    def __init__(
        self,
        audit_sink: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None,
        enable_audit: bool = True,
        enable_notifications: bool = True
    ):
        self.audit_sink = audit_sink
        self.notifier = notifier
        self.enable_audit = enable_audit
        self.enable_notifications = enable_notifications
        self._failed: List[FailedDelivery] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loan_servicing.outbox")

    def _deliver(self, channel: str, description: str, deliver: Callable[[], None],
                 correlation_id: Optional[str]) -> bool:
        try:
            deliver()
            return True
        except Exception as e:
            # Log but don't break the main operation
            log_action(
                self.logger, "error", f"{channel} delivery failed for {description}: {e}",
                action=f"{channel}_failed", correlation_id=correlation_id
            )
            with self._lock:
                self._failed.append(FailedDelivery(
                    channel=channel,
                    description=description,
                    error=str(e),
                    deliver=deliver,
                    correlation_id=correlation_id
                ))
            return False

    def emit_audit(self, entry: AuditEntry) -> bool:
        """Record an audit entry; returns False if the sink failed"""
        if not self.enable_audit or self.audit_sink is None:
            return True
        return self._deliver(
            "audit",
            f"{entry.action.value} {entry.entity_type}:{entry.entity_id}",
            lambda: self.audit_sink.record(entry),
            entry.correlation_id
        )

    def notify(self, loan_id: str, client_id: str, notification_type: NotificationType,
               payload: Dict[str, Any], correlation_id: Optional[str] = None) -> bool:
        """Send a client notification; returns False if the dispatcher failed"""
        if not self.enable_notifications or self.notifier is None:
            return True
        return self._deliver(
            "notification",
            f"{notification_type.value} loan:{loan_id}",
            lambda: self.notifier.send_notification(loan_id, client_id, notification_type, payload),
            correlation_id
        )

    @property
    def failed_deliveries(self) -> List[FailedDelivery]:
        with self._lock:
            return list(self._failed)

    def retry_failed(self) -> int:
        """Retry parked deliveries; returns how many succeeded"""
        with self._lock:
            pending, self._failed = self._failed, []

        delivered = 0
        for item in pending:
            try:
                item.deliver()
                delivered += 1
            except Exception as e:
                item.attempts += 1
                item.error = str(e)
                self.logger.warning(
                    f"Retry {item.attempts} of {item.channel} delivery for {item.description} failed: {e}"
                )
                with self._lock:
                    self._failed.append(item)
        return delivered
