"""
Audit Trail Module

Append-only log of loan lifecycle events. Each event carries the SHA-256
hash of its predecessor, so editing or deleting a stored event shows up as
a hash error or a chain break in ``verify_integrity``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import json
import threading
import uuid

from .storage import StorageInterface, StorageRecord, encode_value

GENESIS_HASH = ""


class AuditEventType(Enum):
    """Types of audit events"""
    # Loans
    LOAN_CREATED = "loan_created"
    LOAN_UPDATED = "loan_updated"
    LOAN_DELETED = "loan_deleted"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_CLOSED = "loan_closed"
    LOAN_REOPENED = "loan_reopened"

    # Payments
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_REVISED = "payment_revised"
    PAYMENT_REVERSED = "payment_reversed"

    # Plans and borrowers
    PLAN_CREATED = "plan_created"
    PLAN_UPDATED = "plan_updated"
    PLAN_DELETED = "plan_deleted"
    BORROWER_CREATED = "borrower_created"
    BORROWER_UPDATED = "borrower_updated"
    BORROWER_DELETED = "borrower_deleted"


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return encode_value(value)


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str                    # loan, plan, borrower
    entity_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    previous_hash: str = GENESIS_HASH
    current_hash: str = ""
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _jsonable(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash itself"""
        payload = json.dumps({
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'metadata': self.metadata,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id
        }, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def seal(self) -> 'AuditEvent':
        self.current_hash = self.calculate_hash()
        return self

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail.

    Events written inside ``storage.atomic()`` disappear with the rest of the
    transaction when it rolls back; the chain head is re-read from storage on
    every write so a rolled back event is never chained to.

    Events logged by the same thread are ordered by ``sequence``. When a
    transaction on one thread rolls back after another thread already
    chained onto one of its events, ``verify_integrity`` reports the gap
    as a chain break.

    The chain head is cached between writes, so every writer of one events
    table goes through the same AuditTrail instance.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._lock = threading.Lock()
        self._head: Optional[Tuple[str, str, int]] = None   # event id, hash, sequence

    def _chain_head(self) -> Tuple[str, int]:
        """Hash and sequence of the latest stored event"""
        # The cached head is dropped once its row is gone (rolled back)
        if self._head is not None and self.storage.exists(self.table_name, self._head[0]):
            return self._head[1], self._head[2]

        head = max(self.storage.load_all(self.table_name),
                   key=lambda data: data.get('sequence', 0), default=None)
        if head is None:
            self._head = None
            return GENESIS_HASH, 0
        self._head = (head['id'], head['current_hash'], head['sequence'])
        return head['current_hash'], head['sequence']

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain.

        Returns:
            The stored AuditEvent, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        # Lock order: storage transaction, then chain lock
        with self.storage.atomic(), self._lock:
            previous_hash, sequence = self._chain_head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata or {},
                sequence=sequence + 1,
                previous_hash=previous_hash,
                user_id=user_id
            ).seal()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = (event.id, event.current_hash, event.sequence)
        return event

    def _events(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        rows = (self.storage.find(self.table_name, filters) if filters
                else self.storage.load_all(self.table_name))
        return sorted((AuditEvent.from_dict(row) for row in rows), key=lambda e: e.sequence)

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events of one entity, oldest first; ``limit`` keeps the most recent"""
        events = self._events({'entity_type': entity_type, 'entity_id': entity_id})
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        events = self._events({'event_type': event_type.value})
        return events[-limit:] if limit else events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the first event.

        Returns:
            Dictionary with ``valid``, ``total_events``, ``hash_errors`` and
            ``chain_breaks``
        """
        events = self._events()
        hash_errors = []
        chain_breaks = []

        expected_previous = GENESIS_HASH
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
