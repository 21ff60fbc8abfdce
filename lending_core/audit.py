"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan, installment and payment state change is logged here, inside the
same atomic block as the change itself.
"""

import hashlib
import json
import uuid
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_RENEWED = "loan_renewed"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LATE_INTEREST_CONFIGURED = "late_interest_configured"
    SCHEDULE_CUSTOMIZED = "schedule_customized"

    # Installment events
    PENALTY_APPLIED = "penalty_applied"

    # Payment events
    PAYMENT_APPLIED = "payment_applied"
    PAYMENT_REVERSED = "payment_reversed"
    PAYMENT_DATE_CHANGED = "payment_date_changed"

    # Scoring events
    SCORE_RECORDED = "score_recorded"

    # Access control events
    USER_CREATED = "user_created"
    ROLE_ASSIGNED = "role_assigned"


def _serializable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serializable(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str    # loan, installment, payment, borrower, user
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = _serializable(self.metadata)

    def _chained_fields(self) -> Dict[str, Any]:
        fields = self.to_dict()
        for key in ('current_hash', 'updated_at'):
            fields.pop(key, None)
        return fields

    def calculate_hash(self) -> str:
        """SHA-256 over every field but current_hash, in canonical JSON"""
        canonical = json.dumps(self._chained_fields(), sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        row = dict(data)
        row['event_type'] = AuditEventType(row['event_type'])
        return super().from_dict(row)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    The chain head (hash and sequence of the newest event) lives in a one-row
    table next to the events and is written in the same atomic block, so
    appending reads one row by key and a rolled-back block takes its head
    update with it.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"

    def _chain_head(self) -> Dict[str, Any]:
        """Hash and sequence of the newest event; an empty chain starts at sequence -1"""
        head = self.storage.load(self.head_table, self.HEAD_ID)
        if head is not None:
            return head
        if self.storage.count(self.table_name) == 0:
            return {'last_hash': "", 'sequence': -1}
        # events written without a head row: rebuild it once from the table
        events = self._load_events()
        return {'last_hash': events[-1].current_hash, 'sequence': len(events) - 1}

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
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['last_hash'],
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            sequence = head['sequence'] + 1
            data = event.to_dict()
            data['sequence'] = sequence
            self.storage.save(self.table_name, event.id, data)
            self.storage.save(self.head_table, self.HEAD_ID, {
                'id': self.HEAD_ID,
                'last_hash': event.current_hash,
                'sequence': sequence,
            })

        return event

    def _load_events(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        rows = self.storage.find(self.table_name, filters or {})
        rows.sort(key=lambda x: (x.get('sequence', 0), x.get('created_at', '')))
        for row in rows:
            row.pop('sequence', None)
        return [AuditEvent.from_dict(row) for row in rows]

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
            limit: Maximum number of (most recent) events to return
        """
        events = self._load_events({'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        return self._load_events({'event_type': event_type.value})

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the first event and report every event whose own
        hash is stale (hash_errors) or whose link to its predecessor does not
        match (chain_breaks).
        """
        events = self._load_events()
        hash_errors: List[Dict[str, Any]] = []
        chain_breaks: List[Dict[str, Any]] = []

        expected_link = ""
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id, 'position': position,
                    'expected_hash': recomputed, 'actual_hash': event.current_hash,
                })
            if event.previous_hash != expected_link:
                chain_breaks.append({
                    'event_id': event.id, 'position': position,
                    'expected_previous_hash': expected_link, 'actual_previous_hash': event.previous_hash,
                })
            expected_link = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }
