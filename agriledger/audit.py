"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every committed loan lifecycle change is logged here, in commit order.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan lifecycle events
    LOAN_CREATED = "loan_created"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_CANCELLED = "loan_cancelled"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_PAYMENT_RECORDED = "loan_payment_recorded"
    LOAN_REPAID = "loan_repaid"
    LOAN_OVERDUE = "loan_overdue"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_RESTRUCTURED = "loan_restructured"
    LOAN_ARCHIVED = "loan_archived"

    # Batch and system events
    OVERDUE_SWEEP_COMPLETED = "overdue_sweep_completed"
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


def _serializable(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serializable(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serializable(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int       # Position in the chain, starting at 1
    event_type: AuditEventType
    entity_type: str    # "loan" or "sweep"
    entity_id: str      # ID of the affected entity
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    metadata: Dict[str, Any]
    user_id: Optional[str] = None         # Principal who initiated the action
    correlation_id: Optional[str] = None  # Request or sweep run identifier

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _serializable(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'correlation_id': self.correlation_id,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with proper enum serialization"""
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection.

    Callers log after their loan transaction commits; the chain lock
    orders concurrent writers so each event links to the one before it.
    The chain head is cached. Event ids follow the sequence, so a write
    by another trail on the same table shows up as an existing id for
    the next sequence and triggers a reload.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._lock = threading.Lock()
        self._load_chain_head()

    @staticmethod
    def event_id(sequence: int) -> str:
        return f"audit-{sequence:012d}"

    def _refresh_chain_head(self) -> None:
        if self.storage.exists(self.table_name, self.event_id(self._last_sequence + 1)):
            self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._last_sequence = latest.get('sequence', 0)
        else:
            self._last_hash = None
            self._last_sequence = 0

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the principal who initiated the action
            correlation_id: Request or run identifier

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)

            # Another trail instance may share the table
            self._refresh_chain_head()
            sequence = self._last_sequence + 1

            event = AuditEvent(
                id=self.event_id(sequence),
                created_at=now,
                updated_at=now,
                sequence=sequence,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                user_id=user_id,
                correlation_id=correlation_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())

            self._last_hash = event.current_hash
            self._last_sequence = event.sequence
            return event

    def _ordered(self, rows: List[Dict[str, Any]]) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in rows]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Audit events of one entity in chain order; `limit` keeps the most recent"""
        events = self._ordered(self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        }))
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        events = self._ordered(self.storage.find(self.table_name, {'event_type': event_type.value}))
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self) -> List[AuditEvent]:
        return self._ordered(self.storage.load_all(self.table_name))

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
            'details': {}
        }

        events = self.get_all_events()
        if not events:
            return result

        result['total_events'] = len(events)

        # Verify each event's hash
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })

        # Verify chain continuity
        previous_hash = ""
        for i, event in enumerate(events):
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        result['details'] = {
            'first_event_time': events[0].created_at.isoformat(),
            'last_event_time': events[-1].created_at.isoformat(),
            'event_types': sorted(set(e.event_type.value for e in events)),
            'entity_types': sorted(set(e.entity_type for e in events))
        }

        return result

    def get_event_by_id(self, event_id: str) -> Optional[AuditEvent]:
        """Get a specific audit event by ID"""
        event_data = self.storage.load(self.table_name, event_id)
        if event_data:
            return AuditEvent.from_dict(event_data)
        return None

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        with self._lock:
            self._refresh_chain_head()
            return self._last_hash
