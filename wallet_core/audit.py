"""
Audit Trail Module

Hash-chained append-only log with SHA-256 for tamper detection. Every
financial state change writes one event in the same unit of work as the
change itself, so a rolled-back operation leaves no audit event behind.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord, encode_value, parse_datetime


class AuditEventType(Enum):
    """Types of audit events"""
    WALLET_CREATED = "wallet_created"
    WALLET_CREDITED = "wallet_credited"
    WALLET_DEBITED = "wallet_debited"
    WALLET_STATUS_CHANGED = "wallet_status_changed"

    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_FAILED = "transaction_failed"
    TRANSACTION_CANCELLED = "transaction_cancelled"

    PAYMENT_CREATED = "payment_created"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"

    TOP_UP_REQUESTED = "top_up_requested"
    TOP_UP_APPROVED = "top_up_approved"
    TOP_UP_REJECTED = "top_up_rejected"

    SAFE_CREATED = "safe_created"
    SAFE_INTEREST_UPDATED = "safe_interest_updated"
    SAFE_WITHDRAWN = "safe_withdrawn"

    FEE_SCHEDULE_CREATED = "fee_schedule_created"


@dataclass
class AuditEvent(StorageRecord):
    """Immutable audit event chained to its predecessor by hash"""
    event_id: str
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'event_id': self.event_id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            event_id=data['event_id'],
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )


class AuditTrail:
    """
    Hash-chained audit trail. The chain head lives in storage so it is
    rolled back together with the events of a failed unit.
    """

    HEAD_KEY = "head"

    def __init__(
        self,
        storage: StorageInterface,
        table_name: str = "audit_events",
        enabled: bool = True
    ):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """Append an event to the chain; returns None when auditing is off"""
        if not self.enabled:
            return None

        with self.storage.atomic():
            head = self.storage.load(self.head_table, self.HEAD_KEY)
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                created_at=now,
                updated_at=now,
                event_id=str(uuid.uuid4()),
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['hash'] if head else "",
                current_hash="",
                metadata=encode_value(metadata or {}),
                user_id=user_id,
            )
            event.current_hash = event.calculate_hash()

            self.storage.insert(self.table_name, event.event_id, event.to_dict())
            self.storage.save(self.head_table, self.HEAD_KEY, {"hash": event.current_hash})

        return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        events_data = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        return [AuditEvent.from_dict(data) for data in events_data]

    def get_all_events(self) -> List[AuditEvent]:
        return [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain in write order and check every hash and link.

        Returns:
            {"valid": bool, "total_events": int, "errors": [str, ...]}
        """
        errors = []
        previous_hash = ""
        events = self.get_all_events()

        for event in events:
            if event.previous_hash != previous_hash:
                errors.append(f"Broken chain at event {event.event_id}")
            if not event.verify_hash():
                errors.append(f"Hash mismatch at event {event.event_id}")
            previous_hash = event.current_hash

        return {"valid": not errors, "total_events": len(events), "errors": errors}
