"""
Audit Trail Module

Audit sink for servicing events. The bundled implementation is a hash-chained
immutable log with SHA-256 for tamper detection; any other sink only needs to
accept an AuditEntry.
"""

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storage_value


class AuditAction(Enum):
    """Auditable servicing actions"""
    REPAYMENT_SCHEDULE_GENERATED = "RepaymentScheduleGenerated"
    PAYMENT_PROCESSED = "PaymentProcessed"
    PAYMENT_RECONCILED = "PaymentReconciled"
    RECONCILIATION_TASK_RESOLVED = "ReconciliationTaskResolved"
    LOAN_RECLASSIFIED = "LoanReclassified"


@dataclass
class AuditEntry:
    """What a caller hands to the audit sink"""
    action: AuditAction
    entity_type: str
    entity_id: str
    actor: str
    correlation_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'actor': self.actor,
            'correlation_id': self.correlation_id,
            'timestamp': self.timestamp.isoformat(),
            'payload': to_storage_value(self.payload),
        }


class AuditSink(ABC):
    """Destination for audit entries"""

    @abstractmethod
    def record(self, entry: AuditEntry) -> None:
        """Persist or forward one audit entry"""
        pass


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    action: AuditAction
    entity_type: str
    entity_id: str
    actor: str
    previous_hash: str
    current_hash: str
    payload: Dict[str, Any]
    correlation_id: Optional[str] = None
    occurred_at: Optional[datetime] = None

    def __post_init__(self):
        if self.payload:
            self.payload = to_storage_value(self.payload)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'actor': self.actor,
            'previous_hash': self.previous_hash,
            'correlation_id': self.correlation_id,
            'occurred_at': self.occurred_at.isoformat() if self.occurred_at else None,
            'payload': self.payload
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        if isinstance(data.get('action'), str):
            data['action'] = AuditAction(data['action'])
        if isinstance(data.get('occurred_at'), str):
            data['occurred_at'] = datetime.fromisoformat(data['occurred_at'])
        return super().from_dict(data)


class AuditTrail(AuditSink):
    """
    Hash-chained audit trail for tamper detection

    The chain follows write order, recorded as a monotonically increasing
    ``sequence`` on each stored event. ``created_at`` is the write time;
    when the audited action happened is kept in ``occurred_at``, which may
    be older for entries redelivered after a sink failure.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            last = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = last.get('current_hash')
            self._last_sequence = last.get('sequence', 0)

    def record(self, entry: AuditEntry) -> None:
        self.log_event(
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            actor=entry.actor,
            correlation_id=entry.correlation_id,
            payload=entry.payload,
            occurred_at=entry.timestamp
        )

    def log_event(
        self,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        actor: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            action: Audited action
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            actor: User or component that performed the action
            payload: Additional event-specific data
            correlation_id: Request correlation identifier
            occurred_at: When the action happened (defaults to the write time)

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)

            # Re-load last hash to ensure we have the most recent one
            self._load_last_hash()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor=actor,
                previous_hash=self._last_hash or "",
                current_hash="",  # Will be calculated below
                payload=payload or {},
                correlation_id=correlation_id,
                occurred_at=occurred_at or now
            )

            event.current_hash = event.calculate_hash()

            record = event.to_dict()
            record['sequence'] = self._last_sequence + 1
            self.storage.save(self.table_name, event.id, record)

            self._last_hash = event.current_hash
            self._last_sequence = record['sequence']
            return event

    def _sorted_events(self) -> List[AuditEvent]:
        rows = self.storage.load_all(self.table_name)
        rows.sort(key=lambda x: x.get('sequence', 0))
        return [AuditEvent.from_dict(row) for row in rows]

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        return [e for e in self._sorted_events()
                if e.entity_type == entity_type and e.entity_id == entity_id]

    def get_events_by_action(self, action: AuditAction) -> List[AuditEvent]:
        """Get audit events for one action, oldest first"""
        return [e for e in self._sorted_events() if e.action == action]

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self._sorted_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
