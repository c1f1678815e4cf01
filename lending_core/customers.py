"""
Customer Management Module

Borrower registry keyed by national ID (DNI). Customers are voided, never
deleted, while they still carry live loans.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import uuid
import re

from .errors import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .movements import MovementLog, MovementType
from .storage import StorageInterface, StorageRecord, Transaction


logger = get_logger("lending.customers")


def normalize_dni(value: Any) -> str:
    """Keep digits only"""
    return re.sub(r'\D', '', str(value or ''))


@dataclass
class Customer(StorageRecord):
    """Borrower profile"""
    dni: str
    full_name: str
    phone: str = ""
    address: str = ""
    notes: str = ""
    voided: bool = False
    voided_at: Optional[datetime] = None
    void_reason: str = ""

    def __post_init__(self):
        if not self.full_name or not self.full_name.strip():
            raise ValidationError("INVALID_INPUT", "Customer name is required")
        dni = normalize_dni(self.dni)
        if not 6 <= len(dni) <= 12:
            raise ValidationError("INVALID_INPUT", "DNI must have 6 to 12 digits")
        self.dni = dni
        self.full_name = self.full_name.strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        voided_at = data.get('voided_at')
        return cls(
            id=data['id'],
            **cls._timestamps(data),
            dni=data['dni'],
            full_name=data['full_name'],
            phone=data.get('phone', ''),
            address=data.get('address', ''),
            notes=data.get('notes', ''),
            voided=bool(data.get('voided')),
            voided_at=datetime.fromisoformat(voided_at) if voided_at else None,
            void_reason=data.get('void_reason', ''),
        )


class CustomerManager:
    """Registers, updates and retires customers"""

    UPDATABLE_FIELDS = {'full_name', 'phone', 'address', 'notes'}

    def __init__(self, storage: StorageInterface, movements: Optional[MovementLog] = None,
                 clock=None):
        self.storage = storage
        self.movements = movements
        self.clock = clock or date.today
        self.table_name = "customers"

    def register(
        self,
        dni: str,
        full_name: str,
        phone: str = "",
        address: str = "",
        notes: str = "",
        actor_id: Optional[str] = None
    ) -> Customer:
        """
        Register a new customer

        Args:
            dni: National ID, any formatting (digits are kept)
            full_name: Customer's full name
            phone: Contact phone
            address: Postal address
            notes: Free-text notes
            actor_id: Identity registering the customer

        Returns:
            Created Customer

        Raises:
            ValidationError: Malformed DNI or empty name
            ConflictError: DNI_EXISTS when the DNI is already registered
        """
        now = datetime.now(timezone.utc)
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            dni=dni,
            full_name=full_name,
            phone=phone or "",
            address=address or "",
            notes=notes or "",
        )

        def _tx(tx: Transaction) -> Customer:
            # DNI index document serializes concurrent registrations
            index_key = f"dni:{customer.dni}"
            if tx.get(self.table_name, index_key) is not None:
                raise ConflictError("DNI_EXISTS", "A customer with this DNI already exists",
                                    {"dni": customer.dni})
            tx.set(self.table_name, index_key, {"id": index_key, "customer_id": customer.id,
                                                "is_index": True})
            tx.set(self.table_name, customer.id, customer.to_dict())
            if self.movements:
                self.movements.record(tx, MovementType.CUSTOMER_CREATE, "customer", customer.id,
                                      actor_id=actor_id, occurred_at=self.clock(),
                                      metadata={"dni": customer.dni, "full_name": customer.full_name})
            return customer

        result = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Customer registered", user_id=actor_id,
                   action="customer_create", resource=f"customer:{result.id}")
        return result

    def get(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.table_name, customer_id)
        if data and not data.get('is_index'):
            return Customer.from_dict(data)
        return None

    def find_by_dni(self, dni: str) -> Optional[Customer]:
        index = self.storage.load(self.table_name, f"dni:{normalize_dni(dni)}")
        if index:
            return self.get(index['customer_id'])
        return None

    def resolve(self, id_or_dni: str) -> Customer:
        """Look a customer up by id, falling back to DNI"""
        customer = self.get(id_or_dni) or self.find_by_dni(id_or_dni)
        if customer is None:
            raise NotFoundError("CUSTOMER_NOT_FOUND", f"Customer {id_or_dni} not found")
        return customer

    def list_customers(self, include_voided: bool = False) -> List[Customer]:
        customers = [
            Customer.from_dict(data) for data in self.storage.load_all(self.table_name)
            if not data.get('is_index')
        ]
        if not include_voided:
            customers = [c for c in customers if not c.voided]
        return sorted(customers, key=lambda c: c.full_name.lower())

    def update(self, customer_id: str, actor_id: Optional[str] = None, **changes) -> Customer:
        """Update contact fields; the DNI is immutable"""
        unknown = set(changes) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError("INVALID_INPUT", f"Cannot update fields: {sorted(unknown)}")

        def _tx(tx: Transaction) -> Customer:
            data = tx.get(self.table_name, customer_id)
            if not data or data.get('is_index'):
                raise NotFoundError("CUSTOMER_NOT_FOUND", f"Customer {customer_id} not found")
            data.update({k: v for k, v in changes.items() if v is not None})
            customer = Customer.from_dict(data)
            customer.updated_at = datetime.now(timezone.utc)
            tx.set(self.table_name, customer_id, customer.to_dict())
            return customer

        customer = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Customer updated", user_id=actor_id,
                   action="customer_update", resource=f"customer:{customer_id}",
                   extra={"fields": sorted(changes)})
        return customer

    def void(self, customer_id: str, reason: str = "", actor_id: Optional[str] = None) -> Customer:
        """
        Retire a customer.

        Refused with HAS_ACTIVE_LOANS while any non-voided loan is active,
        late or in bad debt.
        """
        def _tx(tx: Transaction) -> Customer:
            data = tx.get(self.table_name, customer_id)
            if not data or data.get('is_index'):
                raise NotFoundError("CUSTOMER_NOT_FOUND", f"Customer {customer_id} not found")
            customer = Customer.from_dict(data)
            if customer.voided:
                raise ConflictError("ALREADY_VOIDED", "Customer is already voided")

            today = self.clock()
            self._check_no_live_loans(tx, customer_id, today)

            now = datetime.now(timezone.utc)
            customer.voided = True
            customer.voided_at = now
            customer.void_reason = reason or ""
            customer.updated_at = now
            tx.set(self.table_name, customer_id, customer.to_dict())
            if self.movements:
                self.movements.record(tx, MovementType.CUSTOMER_VOID, "customer", customer_id,
                                      actor_id=actor_id, occurred_at=today, note=reason)
            return customer

        customer = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Customer voided", user_id=actor_id,
                   action="customer_void", resource=f"customer:{customer_id}")
        return customer

    def remove(self, customer_id: str, actor_id: Optional[str] = None) -> bool:
        """Delete a customer and its DNI index; refused with HAS_ACTIVE_LOANS"""
        def _tx(tx: Transaction) -> bool:
            data = tx.get(self.table_name, customer_id)
            if not data or data.get('is_index'):
                raise NotFoundError("CUSTOMER_NOT_FOUND", f"Customer {customer_id} not found")
            self._check_no_live_loans(tx, customer_id, self.clock())
            tx.delete(self.table_name, customer_id)
            tx.delete(self.table_name, f"dni:{data['dni']}")
            return True

        removed = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Customer removed", user_id=actor_id,
                   action="customer_delete", resource=f"customer:{customer_id}")
        return removed

    @staticmethod
    def _check_no_live_loans(tx: Transaction, customer_id: str, today: date) -> None:
        # Imported here, loans imports nothing from this module
        from .loans import LIVE_STATUSES, Loan, compute_status

        for loan_data in tx.query("loans", [("customer_id", "==", customer_id)]):
            loan = Loan.from_dict(loan_data)
            if compute_status(loan, today) in LIVE_STATUSES:
                raise ConflictError("HAS_ACTIVE_LOANS", "Customer still has active loans",
                                    {"loan_id": loan.id})
