"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan and ledger state change is logged here together with the
acting user supplied by the identity provider.
"""

import hashlib
import json
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .money import Money
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_UPDATED = "loan_updated"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_COMPLETED = "loan_completed"
    LOAN_DELETED = "loan_deleted"

    # Ledger events
    DISBURSEMENT_RECORDED = "disbursement_recorded"
    REPAYMENT_RECORDED = "repayment_recorded"
    TRANSACTION_UPDATED = "transaction_updated"

    # System events
    LEDGER_RECONCILED = "ledger_reconciled"


def _convert_value(value):
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    event_type: AuditEventType
    entity_type: str  # loan or transaction
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None  # Acting user

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        if self.metadata:
            self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

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
            'metadata': self.metadata
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
        data['created_at'] = cls.parse_timestamp(data['created_at'])
        data['updated_at'] = cls.parse_timestamp(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    The chain head (last hash and sequence) lives in its own row so that
    appending is a single atomic unit that rolls back with the change it
    describes.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            head = self.storage.load(self.head_table, self.HEAD_ID) or {'sequence': 0, 'hash': ''}
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head['sequence'] + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['hash'],
                current_hash="",  # Calculated below
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.insert(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID,
                              {'sequence': event.sequence, 'hash': event.current_hash})

        return event

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Keep only the most recent N events
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)

        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type"""
        return [e for e in self._load_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain in sequence order and compare it with the head row.

        Detects edited events (hash_errors), removed or reordered events
        (chain_breaks, sequence_gaps) and a truncated tail (head_mismatch).

        Returns:
            Dictionary with integrity check results
        """
        events = self._load_events()
        hash_errors = []
        chain_breaks = []
        sequence_gaps = []

        previous_hash = ""
        expected_sequence = 1
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            if event.sequence != expected_sequence:
                sequence_gaps.append({
                    'event_id': event.id,
                    'expected_sequence': expected_sequence,
                    'actual_sequence': event.sequence
                })
            previous_hash = event.current_hash
            expected_sequence = event.sequence + 1

        head = self.storage.load(self.head_table, self.HEAD_ID)
        head_hash = head['hash'] if head else ""
        head_mismatch = head_hash != previous_hash

        return {
            'valid': not (hash_errors or chain_breaks or sequence_gaps or head_mismatch),
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
            'sequence_gaps': sequence_gaps,
            'head_mismatch': head_mismatch
        }

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        head = self.storage.load(self.head_table, self.HEAD_ID)
        return head['hash'] if head else None
