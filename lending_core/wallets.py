"""
Wallet Ledger Module

Per-identity cash wallets backed by an append-only ledger. A wallet's cached
balance is only ever changed by credit/debit, each of which appends exactly
one ledger entry in the same transaction, so the balance always equals the
signed sum of the entries addressed to the wallet.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .errors import ValidationError
from .logging_config import get_logger, log_action
from .money import ZERO, parse_date, round_money
from .movements import MovementLog, MovementType
from .storage import StorageInterface, StorageRecord, Transaction


logger = get_logger("lending.wallets")


class LedgerEntryType(Enum):
    """Balance-affecting events"""
    PAYMENT_CREDIT = "payment_credit"        # Collected loan payment
    PAYMENT_VOID = "payment_void"            # Reversal of a collected payment
    LOAN_DISBURSE = "loan_disburse"          # Cash handed out for a new loan
    LOAN_VOID_REFUND = "loan_void_refund"    # Disbursement returned when a loan is voided
    TRANSFER = "transfer"                    # Wallet to wallet
    ADJUSTMENT = "adjustment"


@dataclass
class Wallet(StorageRecord):
    """Cached cash position of one identity"""
    uid: str
    email: Optional[str] = None
    balance: Decimal = ZERO
    total_in: Decimal = ZERO
    total_out: Decimal = ZERO
    movements_count: int = 0

    @classmethod
    def empty(cls, uid: str, email: Optional[str] = None) -> 'Wallet':
        now = datetime.now(timezone.utc)
        return cls(id=uid, created_at=now, updated_at=now, uid=uid, email=email)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Wallet':
        return cls(
            id=data['id'],
            **cls._timestamps(data),
            uid=data.get('uid') or data['id'],
            email=data.get('email'),
            balance=round_money(data.get('balance')),
            total_in=round_money(data.get('total_in')),
            total_out=round_money(data.get('total_out')),
            movements_count=int(data.get('movements_count') or 0),
        )


@dataclass
class LedgerEntry(StorageRecord):
    """
    Immutable ledger line.

    amount is always positive; direction comes from from_uid (debited) and
    to_uid (credited). A transfer carries both.
    """
    entry_type: LedgerEntryType
    amount: Decimal
    from_uid: Optional[str] = None
    to_uid: Optional[str] = None
    reason: str = ""
    occurred_at: Optional[date] = None
    loan_id: Optional[str] = None
    payment_id: Optional[str] = None
    actor_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def signed_amount(self, uid: str) -> Decimal:
        """Effect of this entry on uid's balance"""
        signed = ZERO
        if self.to_uid == uid:
            signed += self.amount
        if self.from_uid == uid:
            signed -= self.amount
        return signed

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        occurred = data.get('occurred_at')
        return cls(
            id=data['id'],
            **cls._timestamps(data),
            entry_type=LedgerEntryType(data['entry_type']),
            amount=round_money(data.get('amount')),
            from_uid=data.get('from_uid'),
            to_uid=data.get('to_uid'),
            reason=data.get('reason', ''),
            occurred_at=parse_date(occurred) if occurred else None,
            loan_id=data.get('loan_id'),
            payment_id=data.get('payment_id'),
            actor_id=data.get('actor_id'),
            meta=data.get('meta') or {},
        )


class WalletLedger:
    """
    Owner of wallet balances and ledger entries.

    credit() and debit() take the caller's transaction so they commit
    together with the loan/payment writes that caused them.
    """

    def __init__(self, storage: StorageInterface, movements: Optional[MovementLog] = None):
        self.storage = storage
        self.movements = movements
        self.wallets_table = "wallets"
        self.ledger_table = "ledger"

    def credit(self, tx: Transaction, uid: str, amount: Any, reason: str,
               entry_type: LedgerEntryType = LedgerEntryType.ADJUSTMENT,
               email: Optional[str] = None, **refs) -> LedgerEntry:
        """Add amount to uid's wallet and append the matching entry"""
        return self._post(tx, entry_type, amount, reason, to_uid=uid,
                          emails={uid: email}, **refs)

    def debit(self, tx: Transaction, uid: str, amount: Any, reason: str,
              entry_type: LedgerEntryType = LedgerEntryType.ADJUSTMENT,
              email: Optional[str] = None, **refs) -> LedgerEntry:
        """Subtract amount from uid's wallet and append the matching entry"""
        return self._post(tx, entry_type, amount, reason, from_uid=uid,
                          emails={uid: email}, **refs)

    def transfer(
        self,
        from_uid: str,
        to_uid: str,
        amount: Any,
        note: str = "",
        actor_id: Optional[str] = None,
        from_email: Optional[str] = None,
        to_email: Optional[str] = None
    ) -> LedgerEntry:
        """
        Move cash between two wallets atomically

        Args:
            from_uid: Wallet debited
            to_uid: Wallet credited
            amount: Positive amount
            note: Free-text reason
            actor_id: Identity performing the transfer

        Returns:
            The TRANSFER ledger entry

        Raises:
            ValidationError: Non-positive amount or self transfer
        """
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "Transfer amount must be > 0")
        if not from_uid or not to_uid:
            raise ValidationError("INVALID_INPUT", "Both wallets are required")
        if from_uid == to_uid:
            raise ValidationError("SELF_TRANSFER", "Cannot transfer to the same wallet")

        def _tx(tx: Transaction) -> LedgerEntry:
            entry = self._post(
                tx, LedgerEntryType.TRANSFER, amount, note or "Wallet transfer",
                from_uid=from_uid, to_uid=to_uid,
                emails={from_uid: from_email, to_uid: to_email},
                actor_id=actor_id or from_uid,
            )
            if self.movements:
                self.movements.record(
                    tx, MovementType.WALLET_TRANSFER, "wallet", entry.id,
                    actor_id=actor_id or from_uid, note=note,
                    metadata={"from_uid": from_uid, "to_uid": to_uid, "amount": amount},
                )
            return entry

        entry = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Wallet transfer completed",
                   user_id=actor_id or from_uid, action="wallet_transfer",
                   resource=f"wallet:{from_uid}",
                   extra={"to_uid": to_uid, "amount": str(amount), "entry_id": entry.id})
        return entry

    def _post(self, tx: Transaction, entry_type: LedgerEntryType, amount: Any, reason: str,
              from_uid: Optional[str] = None, to_uid: Optional[str] = None,
              emails: Optional[Dict[str, Optional[str]]] = None,
              occurred_at: Optional[date] = None, loan_id: Optional[str] = None,
              payment_id: Optional[str] = None, actor_id: Optional[str] = None,
              meta: Optional[Dict[str, Any]] = None) -> LedgerEntry:
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "Ledger amount must be > 0")
        if not from_uid and not to_uid:
            raise ValidationError("INVALID_INPUT", "Ledger entry needs a wallet")

        emails = emails or {}
        if from_uid:
            self._apply(tx, from_uid, -amount, emails.get(from_uid))
        if to_uid:
            self._apply(tx, to_uid, amount, emails.get(to_uid))

        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            entry_type=entry_type,
            amount=amount,
            from_uid=from_uid,
            to_uid=to_uid,
            reason=reason,
            occurred_at=occurred_at or now.date(),
            loan_id=loan_id,
            payment_id=payment_id,
            actor_id=actor_id,
            meta=meta or {},
        )
        tx.set(self.ledger_table, entry.id, entry.to_dict())
        return entry

    def _apply(self, tx: Transaction, uid: str, delta: Decimal, email: Optional[str]) -> None:
        doc = tx.get(self.wallets_table, uid)
        wallet = Wallet.from_dict(doc) if doc else Wallet.empty(uid, email)
        wallet.balance = round_money(wallet.balance + delta)
        if delta > ZERO:
            wallet.total_in = round_money(wallet.total_in + delta)
        else:
            wallet.total_out = round_money(wallet.total_out - delta)
        wallet.movements_count += 1
        if email:
            wallet.email = email
        wallet.updated_at = datetime.now(timezone.utc)
        tx.set(self.wallets_table, uid, wallet.to_dict())

    def get_wallet(self, uid: str) -> Wallet:
        """Wallet for uid (an empty one if it never moved)"""
        doc = self.storage.load(self.wallets_table, uid)
        return Wallet.from_dict(doc) if doc else Wallet.empty(uid)

    def list_wallets(self) -> List[Wallet]:
        wallets = [Wallet.from_dict(doc) for doc in self.storage.load_all(self.wallets_table)]
        return sorted(wallets, key=lambda w: w.uid)

    def list_entries(self) -> List[LedgerEntry]:
        entries = [LedgerEntry.from_dict(doc) for doc in self.storage.load_all(self.ledger_table)]
        return sorted(entries, key=lambda e: e.created_at)

    def entries_for(self, uid: str) -> List[LedgerEntry]:
        """All ledger entries touching uid, oldest first"""
        seen = {}
        for field_name in ("from_uid", "to_uid"):
            for doc in self.storage.find(self.ledger_table, {field_name: uid}):
                seen[doc['id']] = LedgerEntry.from_dict(doc)
        return sorted(seen.values(), key=lambda e: e.created_at)

    def ledger_balance(self, uid: str) -> Decimal:
        """Signed sum of the ledger entries addressed to uid"""
        return round_money(sum((e.signed_amount(uid) for e in self.entries_for(uid)), ZERO))

    def ledger_balances(self) -> Dict[str, Decimal]:
        """Signed ledger sum for every uid that appears in the ledger"""
        balances: Dict[str, Decimal] = {}
        for entry in self.list_entries():
            for uid in {entry.from_uid, entry.to_uid} - {None}:
                balances[uid] = round_money(balances.get(uid, ZERO) + entry.signed_amount(uid))
        return balances

    def rebuild_wallet(self, uid: str) -> Wallet:
        """Reset uid's cached balance and totals from the ledger (repair tool)"""
        def _tx(tx: Transaction) -> Wallet:
            doc = tx.get(self.wallets_table, uid)
            wallet = Wallet.from_dict(doc) if doc else Wallet.empty(uid)
            entries = [LedgerEntry.from_dict(row) for row in
                       tx.query(self.ledger_table, [("to_uid", "==", uid)]) +
                       tx.query(self.ledger_table, [("from_uid", "==", uid)])]
            unique = {entry.id: entry for entry in entries}.values()
            wallet.balance = round_money(sum((e.signed_amount(uid) for e in unique), ZERO))
            wallet.total_in = round_money(sum((e.amount for e in unique if e.to_uid == uid), ZERO))
            wallet.total_out = round_money(sum((e.amount for e in unique if e.from_uid == uid), ZERO))
            wallet.movements_count = len(unique)
            wallet.updated_at = datetime.now(timezone.utc)
            tx.set(self.wallets_table, uid, wallet.to_dict())
            return wallet

        wallet = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Wallet rebuilt from ledger", action="wallet_rebuild",
                   resource=f"wallet:{uid}", extra={"balance": str(wallet.balance)})
        return wallet
