"""
Movement Feed Module

Append-only report/audit feed. Every mutating operation writes one movement
inside its own transaction describing what happened; the feed is never
authoritative for balances.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .config import get_config
from .storage import StorageInterface, StorageRecord, Transaction, _serialize


class MovementType(Enum):
    """Types of report movements"""
    # Loan events
    LOAN_CREATE = "loan_create"
    LOAN_VOID = "loan_void"
    LOAN_BAD_DEBT = "loan_bad_debt"

    # Payment events
    PAYMENT_CREATE = "payment_create"
    PAYMENT_VOID = "payment_void"

    # Currency events
    USD_BUY = "usd_buy"
    USD_SELL = "usd_sell"
    USD_VOID = "usd_void"

    # Wallet events
    WALLET_TRANSFER = "wallet_transfer"

    # Customer events
    CUSTOMER_CREATE = "customer_create"
    CUSTOMER_VOID = "customer_void"


@dataclass
class Movement(StorageRecord):
    """Immutable report movement"""
    movement_type: MovementType
    entity_type: str   # loan, payment, usd_movement, wallet, customer
    entity_id: str
    occurred_at: Optional[str] = None
    actor_id: Optional[str] = None
    note: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        self.metadata = _serialize(self.metadata or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Movement':
        return cls(
            id=data['id'],
            **cls._timestamps(data),
            movement_type=MovementType(data['movement_type']),
            entity_type=data.get('entity_type', ''),
            entity_id=data.get('entity_id', ''),
            occurred_at=data.get('occurred_at'),
            actor_id=data.get('actor_id'),
            note=data.get('note', ''),
            metadata=data.get('metadata') or {},
        )


class MovementLog:
    """Writes and lists report movements"""

    def __init__(self, storage: StorageInterface, table_name: str = "movements"):
        self.storage = storage
        self.table_name = table_name

    def record(
        self,
        tx: Transaction,
        movement_type: MovementType,
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str] = None,
        occurred_at: Optional[date] = None,
        note: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[Movement]:
        """
        Buffer a movement write in the caller's transaction

        Args:
            tx: Transaction the triggering operation runs in
            movement_type: What happened
            entity_type: Type of entity affected
            entity_id: ID of the entity
            actor_id: Identity that performed the action
            occurred_at: Business date of the event
            note: Free-text note
            metadata: Event-specific payload (amounts, breakdowns, ...)

        Returns:
            The movement, or None when audit movements are disabled
        """
        if not get_config().enable_audit_movements:
            return None

        now = datetime.now(timezone.utc)
        movement = Movement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            movement_type=movement_type,
            entity_type=entity_type,
            entity_id=entity_id,
            occurred_at=occurred_at.isoformat() if occurred_at else None,
            actor_id=actor_id,
            note=note or "",
            metadata=metadata or {},
        )
        tx.set(self.table_name, movement.id, movement.to_dict())
        return movement

    def list_movements(
        self,
        movement_type: Optional[MovementType] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Movement]:
        """Movements newest first, optionally filtered"""
        conditions = []
        if movement_type:
            conditions.append(("movement_type", "==", movement_type.value))
        if entity_id:
            conditions.append(("entity_id", "==", entity_id))
        rows = self.storage.query(self.table_name, conditions)
        movements = [Movement.from_dict(row) for row in rows]
        movements.sort(key=lambda m: m.created_at, reverse=True)
        return movements[:limit] if limit else movements
