"""
Audit Trail Module

Hash-chained append-only log of ledger state changes. Each event stores the
SHA-256 of its predecessor so edits or deletions in the chain are detectable.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any

from .storage import StorageInterface, StorageRecord, _to_json_value
from .clock import Clock, SystemClock


class AuditEventType(Enum):
    """Types of audit events"""
    LOAN_APPLIED = "loan_applied"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DELETED = "loan_deleted"
    LOAN_COMPLETED = "loan_completed"
    SCHEDULE_GENERATED = "schedule_generated"
    INSTALLMENTS_SETTLED = "installments_settled"
    PENALTY_APPLIED = "penalty_applied"
    AUTOPAY_CHANGED = "autopay_changed"
    AGGREGATES_REPAIRED = "aggregates_repaired"


@dataclass
class AuditEvent(StorageRecord):
    """Immutable audit event"""
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    actor: Optional[str] = None

    def __post_init__(self):
        self.metadata = _to_json_value(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except ``current_hash``"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'actor': self.actor,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """Hash-chained audit trail"""

    CHAIN_TAIL_ID = "tail"

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 table_name: str = "audit_events", enabled: bool = True,
                 chain_table: str = "audit_chain"):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table_name = table_name
        self.chain_table = chain_table
        self.enabled = enabled

    def _ordered_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: (e.metadata.get('_seq', 0), e.created_at))
        return events

    def _chain_tail(self) -> Dict[str, Any]:
        """
        Hash and sequence number of the newest event.

        Kept in one row of ``chain_table`` and written in the same transaction
        as the event it points at. A store without that row is scanned once.
        """
        tail = self.storage.load(self.chain_table, self.CHAIN_TAIL_ID)
        if tail is not None:
            return tail
        events = self._ordered_events()
        if not events:
            return {'id': self.CHAIN_TAIL_ID, 'current_hash': "", 'seq': 0}
        last = events[-1]
        return {
            'id': self.CHAIN_TAIL_ID,
            'current_hash': last.current_hash,
            'seq': last.metadata.get('_seq', 0),
        }

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain.

        Runs inside the caller's transaction when there is one, so the audit
        record commits or rolls back together with the ledger change.
        """
        if not self.enabled:
            return None

        with self.storage.atomic():
            now = self.clock.now()
            tail = self._chain_tail()
            meta = dict(metadata or {})
            # Orders events that share a timestamp
            meta['_seq'] = tail['seq'] + 1
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=tail['current_hash'],
                current_hash="",
                metadata=meta,
                actor=actor
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.chain_table, self.CHAIN_TAIL_ID, {
                'id': self.CHAIN_TAIL_ID,
                'event_id': event.id,
                'current_hash': event.current_hash,
                'seq': meta['_seq'],
            })
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        return [
            e for e in self._ordered_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self._ordered_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every hash and the chain links.

        Returns:
            Dictionary with ``valid``, ``total_events``, ``hash_errors`` and
            ``chain_breaks``
        """
        result = {'valid': True, 'total_events': 0, 'hash_errors': [], 'chain_breaks': []}
        events = self._ordered_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': position})
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'event_id': event.id, 'position': position})
            previous_hash = event.current_hash

        # A removed newest event leaves the tail pointing past the chain
        tail = self.storage.load(self.chain_table, self.CHAIN_TAIL_ID)
        if tail is not None and tail['current_hash'] != previous_hash:
            result['valid'] = False
            result['chain_breaks'].append({'event_id': tail.get('event_id'), 'position': len(events)})

        return result
