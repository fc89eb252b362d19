"""
Audit Trail Module

Append-only record of ledger changes. Each event carries a sequence number
and the SHA-256 digest of its predecessor, so edits, deletions and
reordering of stored events all show up in verify_integrity().
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, serialize_value


class AuditEventType(Enum):
    """What happened"""
    # Loan lifecycle
    LOAN_CREATED = "loan_created"
    LOAN_APPROVED = "loan_approved"
    LOAN_CANCELLED = "loan_cancelled"
    LOAN_COMPLETED = "loan_completed"
    LOAN_DEFAULTED = "loan_defaulted"

    # Collections
    PAYMENT_RECORDED = "payment_recorded"
    INSTALLMENTS_MARKED_OVERDUE = "installments_marked_overdue"

    # Borrowers and owner settings
    BORROWER_REGISTERED = "borrower_registered"
    BORROWER_MARKED_DEFAULTER = "borrower_marked_defaulter"
    SETTINGS_UPDATED = "settings_updated"


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str  # loan, collection, borrower, owner_settings
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None  # Owner who triggered the change
    sequence: int = 0

    def __post_init__(self):
        self.metadata = serialize_value(self.metadata or {})

    def digest(self) -> str:
        """SHA-256 over every field except current_hash and updated_at"""
        payload = {
            'sequence': self.sequence,
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity': f"{self.entity_type}:{self.entity_id}",
            'user_id': self.user_id,
            'metadata': self.metadata,
            'previous_hash': self.previous_hash,
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.digest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Writes and checks the audit chain

    The head of the chain (last sequence and digest) is cached in memory
    and recovered from storage on construction, so a restarted process
    keeps appending to the same chain.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._head_sequence = 0
        self._head_hash = ""

        events = self._ordered_events()
        if events:
            self._head_sequence = events[-1].sequence
            self._head_hash = events[-1].current_hash

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: Kind of change
            entity_type: Record kind, e.g. "loan"
            entity_id: Record id
            metadata: Event details; Decimals and dates are stored as strings
            user_id: Owner who triggered the change
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._head_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                sequence=self._head_sequence + 1
            )
            event.current_hash = event.digest()
            self.storage.save(self.table_name, event.id, event.to_dict())

            self._head_sequence = event.sequence
            self._head_hash = event.current_hash
            return event

    def _ordered_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(record) for record in self.storage.load_all(self.table_name)]
        return sorted(events, key=lambda e: e.sequence)

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Events for one record, oldest first"""
        return [
            e for e in self._ordered_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def get_events_by_owner(self, user_id: str) -> List[AuditEvent]:
        return [e for e in self._ordered_events() if e.user_id == user_id]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the first event

        Returns a dict with ``valid``, ``total_events``, ``hash_errors``
        (events whose content no longer matches their digest) and
        ``chain_breaks`` (events not linked to their predecessor, or with a
        gap in the sequence).
        """
        events = self._ordered_events()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({'event_id': event.id, 'position': position})
            if event.previous_hash != expected_previous or event.sequence != position + 1:
                chain_breaks.append({'event_id': event.id, 'position': position})
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
