"""
Payment Processing Module

Applies a payment to a loan as one atomic transaction: loan repayment state,
the collector's wallet and ledger, the monthly profit rollup, the treasury
counters and the report movement all commit together or not at all.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import uuid

from .counters import TreasuryCounters
from .errors import ConflictError, LendingError, NotFoundError, ValidationError
from .loans import LOANS_TABLE, FundingStatus, Loan, LoanKind, LoanStatus, PaymentAllocation
from .logging_config import get_logger, log_action
from .money import ZERO, month_key, parse_date, round_money
from .movements import MovementLog, MovementType
from .profits import ProfitRollup
from .storage import StorageInterface, StorageRecord, Transaction
from .wallets import LedgerEntryType, WalletLedger


logger = get_logger("lending.payments")

PAYMENTS_TABLE = "payments"
LOAN_PAYMENTS_TABLE = "loan_payments"


@dataclass
class Payment(StorageRecord):
    """Collected payment; voiding flags it and never deletes it"""
    loan_id: str
    customer_id: Optional[str]
    customer_name: str
    loan_kind: LoanKind
    amount_paid: Decimal            # principal_paid + interest_total
    interest_total: Decimal
    interest_mine: Decimal
    interest_intermediary: Decimal
    principal_paid: Decimal
    paid_at: date
    paid_month: str
    installment_number: Optional[int] = None
    method: str = "cash"
    note: str = ""
    created_by: Optional[str] = None
    created_by_email: Optional[str] = None
    previous_next_due_date: Optional[date] = None
    next_due_date_set: Optional[date] = None
    voided: bool = False
    voided_at: Optional[datetime] = None
    voided_by: Optional[str] = None
    void_reason: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        def optional_date(key):
            return parse_date(data[key]) if data.get(key) else None

        paid_at = parse_date(data['paid_at'])
        voided_at = data.get('voided_at')
        number = data.get('installment_number')
        return cls(
            id=data['id'],
            **cls._timestamps(data),
            loan_id=data['loan_id'],
            customer_id=data.get('customer_id'),
            customer_name=data.get('customer_name', ''),
            loan_kind=LoanKind.parse(data.get('loan_kind')),
            amount_paid=round_money(data.get('amount_paid')),
            interest_total=round_money(data.get('interest_total')),
            interest_mine=round_money(data.get('interest_mine')),
            interest_intermediary=round_money(data.get('interest_intermediary')),
            principal_paid=round_money(data.get('principal_paid')),
            paid_at=paid_at,
            paid_month=data.get('paid_month') or month_key(paid_at),
            installment_number=int(number) if number is not None else None,
            method=data.get('method', 'cash'),
            note=data.get('note', ''),
            created_by=data.get('created_by'),
            created_by_email=data.get('created_by_email'),
            previous_next_due_date=optional_date('previous_next_due_date'),
            next_due_date_set=optional_date('next_due_date_set'),
            voided=bool(data.get('voided')),
            voided_at=datetime.fromisoformat(voided_at) if voided_at else None,
            voided_by=data.get('voided_by'),
            void_reason=data.get('void_reason', ''),
        )


@dataclass
class InstallmentUpdate:
    number: int
    paid_total: Decimal
    pending_amount: Decimal


@dataclass
class InstallmentPaymentResult:
    payment_id: str
    installment_updated: Optional[InstallmentUpdate]
    loan_status: LoanStatus
    already_exists: bool = False


@dataclass
class InterestOnlyPaymentResult:
    payment_id: str
    principal_outstanding: Decimal
    loan_status: LoanStatus
    already_exists: bool = False


class PaymentProcessor:
    """Records installment and interest-only payments"""

    def __init__(self, storage: StorageInterface, wallet_ledger: WalletLedger,
                 profits: ProfitRollup, movements: MovementLog,
                 counters: Optional[TreasuryCounters] = None,
                 clock: Optional[Callable[[], date]] = None):
        self.storage = storage
        self.wallet_ledger = wallet_ledger
        self.profits = profits
        self.movements = movements
        self.counters = counters or TreasuryCounters()
        self.clock = clock or date.today

    def record_installment_payment(
        self,
        loan_id: str,
        amount: Any,
        actor_id: str,
        paid_at: Any = None,
        method: str = "cash",
        note: str = "",
        payment_id: Optional[str] = None,
        installment_number: Optional[int] = None,
        actor_email: Optional[str] = None
    ) -> InstallmentPaymentResult:
        """
        Apply a payment to one installment of a simple loan

        Args:
            loan_id: Loan being repaid
            amount: Amount tendered (must not exceed the installment's pending)
            actor_id: Identity collecting the cash; their wallet is credited
            paid_at: Business date of the payment (defaults to today)
            method: Payment method label
            note: Free-text note
            payment_id: Caller-chosen id; an existing payment with this id
                makes the call an idempotent no-op
            installment_number: Target installment (earliest unpaid if None)
            actor_email: Denormalized email for the wallet

        Returns:
            InstallmentPaymentResult

        Raises:
            NotFoundError: LOAN_NOT_FOUND
            ConflictError: EXCEEDS_PENDING, LOAN_PENDING_APPROVAL, LOAN_NOT_SIMPLE
            ValidationError: INVALID_AMOUNT, INVALID_INSTALLMENT
        """
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "Payment amount must be > 0")

        def apply(loan: Loan, paid_on: date) -> PaymentAllocation:
            return loan.behavior.apply_payment(loan, paid_on, amount=amount,
                                               installment_number=installment_number)

        def result(payment_id: str, loan: Loan, number: Optional[int],
                   already_exists: bool) -> InstallmentPaymentResult:
            updated = None
            for inst in loan.installments:
                if inst.number == number:
                    updated = InstallmentUpdate(inst.number, inst.paid_total, inst.pending)
            return InstallmentPaymentResult(payment_id, updated, loan.status, already_exists)

        return self._record(loan_id, LoanKind.SIMPLE, apply, result, actor_id, paid_at,
                            method, note, payment_id, actor_email)

    def record_interest_only_payment(
        self,
        loan_id: str,
        interest_paid: Any,
        principal_paid: Any,
        actor_id: str,
        paid_at: Any = None,
        method: str = "cash",
        note: str = "",
        payment_id: Optional[str] = None,
        actor_email: Optional[str] = None
    ) -> InterestOnlyPaymentResult:
        """
        Apply explicit interest and principal amounts to an interest-only loan.

        The next due date moves to one period after paid_at.
        """
        def apply(loan: Loan, paid_on: date) -> PaymentAllocation:
            return loan.behavior.apply_payment(loan, paid_on, interest=interest_paid,
                                               principal=principal_paid)

        def result(payment_id: str, loan: Loan, number: Optional[int],
                   already_exists: bool) -> InterestOnlyPaymentResult:
            return InterestOnlyPaymentResult(payment_id, loan.principal_outstanding,
                                             loan.status, already_exists)

        return self._record(loan_id, LoanKind.INTEREST_ONLY, apply, result, actor_id, paid_at,
                            method, note, payment_id, actor_email)

    def _record(self, loan_id, kind, apply, result, actor_id, paid_at, method, note,
                payment_id, actor_email):
        if not actor_id:
            raise ValidationError("INVALID_INPUT", "A collecting identity is required")
        # Fixed before the first attempt so retries reuse the same id
        payment_id = payment_id or str(uuid.uuid4())
        paid_on = parse_date(paid_at) if paid_at else self.clock()

        def _tx(tx: Transaction):
            loan_data = tx.get(LOANS_TABLE, loan_id)
            if not loan_data:
                raise NotFoundError("LOAN_NOT_FOUND", f"Loan {loan_id} not found")
            loan = Loan.from_dict(loan_data)

            existing = tx.get(PAYMENTS_TABLE, payment_id)
            if existing is not None:
                return result(payment_id, loan, existing.get('installment_number'), True)

            self._check_payable(loan, kind)
            allocation = apply(loan, paid_on)
            payment = self._book(tx, loan, allocation, payment_id, paid_on, method, note,
                                 actor_id, actor_email)
            number = allocation.installment.number if allocation.installment else None
            return result(payment.id, loan, number, False)

        try:
            outcome = self.storage.run_transaction(_tx)
        except LendingError as e:
            log_action(logger, "warning", "Payment rejected", user_id=actor_id,
                       action="payment_create", resource=f"loan:{loan_id}",
                       extra={"code": e.code, "payment_id": payment_id})
            raise

        log_action(logger, "info",
                   "Payment already recorded" if outcome.already_exists else "Payment recorded",
                   user_id=actor_id, action="payment_create", resource=f"loan:{loan_id}",
                   extra={"payment_id": outcome.payment_id,
                          "loan_status": outcome.loan_status.value,
                          "already_exists": outcome.already_exists})
        return outcome

    @staticmethod
    def _check_payable(loan: Loan, kind: LoanKind) -> None:
        if loan.voided:
            raise ConflictError("LOAN_VOIDED", "Loan is voided")
        if loan.funding_status == FundingStatus.PENDING:
            raise ConflictError("LOAN_PENDING_APPROVAL", "Loan is pending funding approval")
        if loan.funding_status == FundingStatus.REJECTED:
            raise ConflictError("LOAN_PENDING_APPROVAL", "Loan funding was rejected")
        if loan.kind != kind:
            code = "LOAN_NOT_SIMPLE" if kind == LoanKind.SIMPLE else "LOAN_NOT_INTEREST_ONLY"
            raise ConflictError(code, f"Loan is not {kind.value}", {"kind": loan.kind.value})

    def _book(self, tx: Transaction, loan: Loan, allocation: PaymentAllocation,
              payment_id: str, paid_on: date, method: str, note: str,
              actor_id: str, actor_email: Optional[str]) -> Payment:
        """Write every effect of an applied payment"""
        if loan.has_intermediary:
            mine, intermediary = loan.interest_split.split(allocation.interest)
        else:
            mine, intermediary = allocation.interest, ZERO

        loan.paid_capital = round_money(loan.paid_capital + allocation.principal)
        loan.paid_interest = round_money(loan.paid_interest + allocation.interest)
        loan.interest_earned_mine_total = round_money(loan.interest_earned_mine_total + mine)
        loan.interest_earned_intermediary_total = round_money(
            loan.interest_earned_intermediary_total + intermediary)
        loan.behavior.refresh(loan, self.clock())
        if loan.status == LoanStatus.FINISHED:
            loan.end_date = paid_on

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=payment_id,
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            customer_id=loan.customer_id,
            customer_name=loan.customer_name,
            loan_kind=loan.kind,
            amount_paid=allocation.amount,
            interest_total=allocation.interest,
            interest_mine=mine,
            interest_intermediary=intermediary,
            principal_paid=allocation.principal,
            paid_at=paid_on,
            paid_month=month_key(paid_on),
            installment_number=allocation.installment.number if allocation.installment else None,
            method=method or "cash",
            note=note or "",
            created_by=actor_id,
            created_by_email=actor_email,
            previous_next_due_date=allocation.previous_next_due_date,
            next_due_date_set=loan.next_due_date if loan.kind == LoanKind.INTEREST_ONLY else None,
        )
        payment_doc = payment.to_dict()
        tx.set(PAYMENTS_TABLE, payment.id, payment_doc)
        tx.set(LOAN_PAYMENTS_TABLE, f"{loan.id}_{payment.id}", payment_doc)

        self.wallet_ledger.credit(
            tx, actor_id, payment.amount_paid, f"Payment {payment.id} on loan {loan.id}",
            entry_type=LedgerEntryType.PAYMENT_CREDIT, email=actor_email,
            occurred_at=paid_on, loan_id=loan.id, payment_id=payment.id, actor_id=actor_id,
            meta={"interest": payment.interest_total, "principal": payment.principal_paid,
                  "mine": mine, "intermediary": intermediary, "month": payment.paid_month},
        )
        self.profits.increment(tx, payment.paid_month, mine, intermediary, payment.interest_total)
        self.counters.apply(tx, collected=payment.amount_paid,
                            outstanding=-payment.principal_paid, liquid=payment.amount_paid)
        self.counters.apply_user(tx, actor_id, 1, payment.amount_paid, actor_email)
        self.movements.record(
            tx, MovementType.PAYMENT_CREATE, "payment", payment.id, actor_id=actor_id,
            occurred_at=paid_on, note=note,
            metadata={"loan_id": loan.id, "customer_id": loan.customer_id,
                      "customer_name": loan.customer_name,
                      "installment_number": payment.installment_number,
                      "amount": payment.amount_paid, "interest": payment.interest_total,
                      "principal": payment.principal_paid, "method": payment.method},
        )

        loan.updated_at = now
        tx.set(LOANS_TABLE, loan.id, loan.to_dict())
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(PAYMENTS_TABLE, payment_id)
        return Payment.from_dict(data) if data else None

    def list_payments(self, loan_id: Optional[str] = None,
                      include_voided: bool = False) -> List[Payment]:
        filters = {"loan_id": loan_id} if loan_id else {}
        payments = [Payment.from_dict(row) for row in self.storage.find(PAYMENTS_TABLE, filters)]
        if not include_voided:
            payments = [p for p in payments if not p.voided]
        return sorted(payments, key=lambda p: (p.paid_at, p.created_at))
