"""
Void / Reversal Coordinator

Exact reversal of payments, loans and currency trades. A void flags the
original record and writes offsetting entries; nothing is deleted, and every
derived quantity the original operation touched is re-derived in the same
transaction.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import get_config
from .counters import TreasuryCounters
from .currency_lots import TRADES_TABLE, CurrencyInventory, CurrencyTrade, TradeType
from .errors import ConflictError, LendingError, NotFoundError
from .loans import LOANS_TABLE, Loan, LoanStatus
from .logging_config import get_logger, log_action
from .money import ZERO
from .movements import MovementLog, MovementType
from .payments import LOAN_PAYMENTS_TABLE, PAYMENTS_TABLE, Payment
from .profits import ProfitRollup
from .storage import StorageInterface, Transaction
from .wallets import LedgerEntryType, WalletLedger


logger = get_logger("lending.voids")

# Writes one payment reversal buffers: payment, mirror, wallet, ledger entry,
# profit row, treasury summary, treasury user, movement
WRITES_PER_PAYMENT_VOID = 8


@dataclass
class VoidResult:
    ok: bool
    entity_id: str
    voided_payments: int = 0


class VoidCoordinator:
    """Reverses payments, loans and currency movements"""

    def __init__(self, storage: StorageInterface, wallet_ledger: WalletLedger,
                 profits: ProfitRollup, movements: MovementLog, inventory: CurrencyInventory,
                 counters: Optional[TreasuryCounters] = None,
                 clock: Optional[Callable[[], date]] = None):
        self.storage = storage
        self.wallet_ledger = wallet_ledger
        self.profits = profits
        self.movements = movements
        self.inventory = inventory
        self.counters = counters or TreasuryCounters()
        self.clock = clock or date.today

    def void_payment(self, payment_id: str, reason: str = "",
                     actor_id: Optional[str] = None) -> VoidResult:
        """
        Void a payment and undo all of its effects

        Raises:
            NotFoundError: PAYMENT_NOT_FOUND, LOAN_NOT_FOUND
            ConflictError: ALREADY_VOIDED
        """
        def _tx(tx: Transaction) -> VoidResult:
            payment = self._load_payment(tx, payment_id)
            if payment.voided:
                raise ConflictError("ALREADY_VOIDED", f"Payment {payment_id} is already voided")
            loan_data = tx.get(LOANS_TABLE, payment.loan_id)
            if not loan_data:
                raise NotFoundError("LOAN_NOT_FOUND", f"Loan {payment.loan_id} not found")
            loan = Loan.from_dict(loan_data)
            self._reverse_payment(tx, loan, payment, reason, actor_id)
            self._save_loan(tx, loan)
            return VoidResult(True, payment_id)

        result = self._run(_tx, "payment_void", f"payment:{payment_id}", actor_id)
        return result

    def void_loan(self, loan_id: str, reason: str = "", actor_id: Optional[str] = None,
                  with_payments: bool = False) -> VoidResult:
        """
        Void a loan and reverse its disbursement

        Without with_payments the loan must carry no live payments
        (HAS_PAYMENTS). With it, every live payment is voided first in
        batches sized to the store's per-transaction write limit, then the
        loan itself. A payment recorded after the batches is voided in one
        more pass before the loan write is retried; if another one slips in
        after that, HAS_PAYMENTS propagates with the earlier voids committed.
        """
        voided_payments = 0
        if with_payments:
            loan_data = self.storage.load(LOANS_TABLE, loan_id)
            if not loan_data:
                raise NotFoundError("LOAN_NOT_FOUND", f"Loan {loan_id} not found")
            if loan_data.get('voided'):
                raise ConflictError("ALREADY_VOIDED", f"Loan {loan_id} is already voided")
            voided_payments = self._void_loan_payments(loan_id, reason, actor_id)

        def _tx(tx: Transaction) -> VoidResult:
            data = tx.get(LOANS_TABLE, loan_id)
            if not data:
                raise NotFoundError("LOAN_NOT_FOUND", f"Loan {loan_id} not found")
            loan = Loan.from_dict(data)
            if loan.voided:
                raise ConflictError("ALREADY_VOIDED", f"Loan {loan_id} is already voided")
            live = tx.query(PAYMENTS_TABLE, [("loan_id", "==", loan_id), ("voided", "==", False)])
            if live:
                raise ConflictError("HAS_PAYMENTS", "Loan has payments; void them first",
                                    {"payments": len(live)})

            if loan.disbursed:
                outstanding = loan.behavior.outstanding(loan)
                self.wallet_ledger.credit(
                    tx, loan.funding_source_uid, loan.principal, f"Loan {loan.id} voided",
                    entry_type=LedgerEntryType.LOAN_VOID_REFUND, email=loan.funding_source_email,
                    occurred_at=self.clock(), loan_id=loan.id, actor_id=actor_id,
                )
                self.counters.apply(tx, disbursed=-loan.principal, outstanding=-outstanding,
                                    liquid=loan.principal)

            loan.voided = True
            loan.voided_at = datetime.now(timezone.utc)
            loan.void_reason = reason or ""
            loan.status = LoanStatus.VOID
            self._save_loan(tx, loan)
            self.movements.record(tx, MovementType.LOAN_VOID, "loan", loan.id, actor_id=actor_id,
                                  occurred_at=self.clock(), note=reason,
                                  metadata={"principal": loan.principal,
                                            "customer_id": loan.customer_id,
                                            "voided_payments": voided_payments})
            return VoidResult(True, loan_id, voided_payments)

        try:
            return self._run(_tx, "loan_void", f"loan:{loan_id}", actor_id)
        except ConflictError as e:
            if not with_payments or e.code != "HAS_PAYMENTS":
                raise

        # A payment landed between the batches and the loan write
        voided_payments += self._void_loan_payments(loan_id, reason, actor_id)
        return self._run(_tx, "loan_void", f"loan:{loan_id}", actor_id)

    def _void_loan_payments(self, loan_id: str, reason: str, actor_id: Optional[str]) -> int:
        payment_ids = [row['id'] for row in self.storage.find(
            PAYMENTS_TABLE, {"loan_id": loan_id, "voided": False})]
        # Loan write plus the per-payment writes must fit one transaction
        budget = min(get_config().void_batch_operations, get_config().transaction_max_operations)
        batch_size = max(1, (budget - 1) // WRITES_PER_PAYMENT_VOID)
        voided = 0

        for start in range(0, len(payment_ids), batch_size):
            batch = payment_ids[start:start + batch_size]

            def _tx(tx: Transaction, batch: List[str] = batch) -> int:
                loan = Loan.from_dict(tx.get(LOANS_TABLE, loan_id))
                count = 0
                for pid in batch:
                    data = tx.get(PAYMENTS_TABLE, pid)
                    if not data or data.get('voided'):
                        continue
                    self._reverse_payment(tx, loan, Payment.from_dict(data),
                                          reason or "Loan voided", actor_id)
                    count += 1
                if count:
                    self._save_loan(tx, loan)
                return count

            voided += self.storage.run_transaction(_tx)
            log_action(logger, "info", "Loan payments batch voided", user_id=actor_id,
                       action="loan_void_payments", resource=f"loan:{loan_id}",
                       extra={"batch_start": start, "batch_size": len(batch)})
        return voided

    def _reverse_payment(self, tx: Transaction, loan: Loan, payment: Payment,
                         reason: str, actor_id: Optional[str]) -> None:
        """Undo one payment's effects on loan, wallet, ledger and rollups"""
        loan.behavior.apply_void(loan, payment.amount_paid, payment.principal_paid,
                                 installment_number=payment.installment_number,
                                 previous_next_due_date=payment.previous_next_due_date,
                                 next_due_date_set=payment.next_due_date_set)
        loan.paid_capital = max(ZERO, loan.paid_capital - payment.principal_paid)
        loan.paid_interest = max(ZERO, loan.paid_interest - payment.interest_total)
        loan.interest_earned_mine_total = max(
            ZERO, loan.interest_earned_mine_total - payment.interest_mine)
        loan.interest_earned_intermediary_total = max(
            ZERO, loan.interest_earned_intermediary_total - payment.interest_intermediary)
        loan.behavior.refresh(loan, self.clock())

        collector = payment.created_by
        self.wallet_ledger.debit(
            tx, collector, payment.amount_paid, f"Void of payment {payment.id}",
            entry_type=LedgerEntryType.PAYMENT_VOID, email=payment.created_by_email,
            occurred_at=self.clock(), loan_id=loan.id, payment_id=payment.id, actor_id=actor_id,
            meta={"interest": payment.interest_total, "principal": payment.principal_paid,
                  "mine": payment.interest_mine, "intermediary": payment.interest_intermediary,
                  "month": payment.paid_month},
        )
        self.profits.increment(tx, payment.paid_month, -payment.interest_mine,
                               -payment.interest_intermediary, -payment.interest_total,
                               payments=-1)
        self.counters.apply(tx, collected=-payment.amount_paid,
                            outstanding=payment.principal_paid, liquid=-payment.amount_paid)
        self.counters.apply_user(tx, collector, -1, -payment.amount_paid)

        now = datetime.now(timezone.utc)
        payment.voided = True
        payment.voided_at = now
        payment.voided_by = actor_id
        payment.void_reason = reason or ""
        payment.updated_at = now
        payment_doc = payment.to_dict()
        tx.set(PAYMENTS_TABLE, payment.id, payment_doc)
        tx.set(LOAN_PAYMENTS_TABLE, f"{loan.id}_{payment.id}", payment_doc)
        self.movements.record(tx, MovementType.PAYMENT_VOID, "payment", payment.id,
                              actor_id=actor_id, occurred_at=self.clock(), note=reason,
                              metadata={"loan_id": loan.id, "amount": payment.amount_paid,
                                        "interest": payment.interest_total,
                                        "principal": payment.principal_paid})

    def void_currency_movement(self, movement_id: str, reason: str = "",
                               actor_id: Optional[str] = None) -> VoidResult:
        """
        Void a USD buy or sell

        A sell puts its FIFO breakdown back into the lots; a buy requires its
        lot to be untouched (LOT_ALREADY_USED).
        """
        def _tx(tx: Transaction) -> VoidResult:
            data = tx.get(TRADES_TABLE, movement_id)
            if not data:
                raise NotFoundError("MOVEMENT_NOT_FOUND", f"Movement {movement_id} not found")
            trade = CurrencyTrade.from_dict(data)
            if trade.voided:
                raise ConflictError("ALREADY_VOIDED", f"Movement {movement_id} is already voided")

            if trade.trade_type == TradeType.SELL:
                summary = self.inventory.restore_sell(tx, trade)
            else:
                summary = self.inventory.retract_buy(tx, trade)

            now = datetime.now(timezone.utc)
            trade.voided = True
            trade.voided_at = now
            trade.void_reason = reason or ""
            trade.updated_at = now
            tx.set(TRADES_TABLE, trade.id, trade.to_dict())
            self.movements.record(tx, MovementType.USD_VOID, "usd_movement", trade.id,
                                  actor_id=actor_id, occurred_at=self.clock(), note=reason,
                                  metadata={"trade_type": trade.trade_type, "usd": trade.quantity,
                                            "profit": trade.profit_total,
                                            "available_after": summary.available_qty})
            return VoidResult(True, movement_id)

        return self._run(_tx, "usd_void", f"usd_movement:{movement_id}", actor_id)

    def _run(self, fn, action: str, resource: str, actor_id: Optional[str]) -> VoidResult:
        try:
            result = self.storage.run_transaction(fn)
        except LendingError as e:
            log_action(logger, "warning", "Void rejected", user_id=actor_id, action=action,
                       resource=resource, extra={"code": e.code})
            raise
        log_action(logger, "info", "Void completed", user_id=actor_id, action=action,
                   resource=resource, extra={"voided_payments": result.voided_payments})
        return result

    @staticmethod
    def _load_payment(tx: Transaction, payment_id: str) -> Payment:
        data = tx.get(PAYMENTS_TABLE, payment_id)
        if not data:
            raise NotFoundError("PAYMENT_NOT_FOUND", f"Payment {payment_id} not found")
        return Payment.from_dict(data)

    @staticmethod
    def _save_loan(tx: Transaction, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        tx.set(LOANS_TABLE, loan.id, loan.to_dict())
