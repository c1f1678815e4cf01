"""
Loan Module

Loan records, the two loan kinds (fixed-term simple interest and open-ended
interest-only) behind one LoanBehavior interface, the status state machine
and loan origination, disbursement and lifecycle management.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .config import get_config
from .counters import TreasuryCounters
from .errors import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .money import HUNDRED, ZERO, amount_epsilon, clamp_zero, parse_date, round_money, to_decimal
from .movements import MovementLog, MovementType
from .schedule import (
    Frequency, Installment, add_periods, apply_amount, compute_total_due, ensure_installments,
    next_due_date, normalize_installments, revert_amount, split_schedule,
)
from .storage import StorageInterface, StorageRecord, Transaction
from .wallets import LedgerEntryType, WalletLedger


logger = get_logger("lending.loans")

LOANS_TABLE = "loans"


class LoanKind(Enum):
    """Loan repayment structure"""
    SIMPLE = "simple"                # Fixed installment schedule
    INTEREST_ONLY = "interest-only"  # "American": principal due until repaid

    @classmethod
    def parse(cls, value: Any) -> 'LoanKind':
        if isinstance(value, LoanKind):
            return value
        text = str(value or "simple").strip().lower().replace("_", "-")
        if text in ("interest-only", "american", "americano"):
            return cls.INTEREST_ONLY
        if text == "simple":
            return cls.SIMPLE
        raise ValidationError("INVALID_INPUT", f"Unknown loan kind: {value}")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"      # Awaiting funding approval
    REJECTED = "rejected"    # Funding rejected
    ACTIVE = "active"        # Current on payments
    LATE = "late"            # Next due date has passed
    FINISHED = "finished"    # Fully repaid
    BAD_DEBT = "bad_debt"    # Written off (sticky)
    VOID = "void"            # Voided (sticky)


class FundingStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


STICKY_STATUSES = {LoanStatus.BAD_DEBT, LoanStatus.VOID}
LIVE_STATUSES = {LoanStatus.ACTIVE, LoanStatus.LATE, LoanStatus.BAD_DEBT}


@dataclass
class InterestSplit:
    """How collected interest is shared with an intermediary"""
    total_pct: Decimal = HUNDRED
    intermediary_pct: Decimal = ZERO
    my_pct: Decimal = HUNDRED

    @classmethod
    def validated(cls, total_pct: Any = None, intermediary_pct: Any = None,
                  my_pct: Any = None) -> 'InterestSplit':
        total = to_decimal(total_pct if total_pct is not None else HUNDRED)
        inter = to_decimal(intermediary_pct)
        mine = to_decimal(my_pct) if my_pct is not None else total - inter
        if total <= ZERO or inter < ZERO or mine < ZERO:
            raise ValidationError("INVALID_INPUT", "Interest split percentages must be non-negative")
        if abs(inter + mine - total) > amount_epsilon():
            raise ValidationError("INVALID_INPUT",
                                  "intermediaryPct + myPct must equal totalPct",
                                  {"total_pct": str(total), "intermediary_pct": str(inter),
                                   "my_pct": str(mine)})
        return cls(total, inter, mine)

    def split(self, interest: Any) -> Tuple[Decimal, Decimal]:
        """(mine, intermediary), rounded to cents and summing exactly to interest"""
        interest = round_money(interest)
        if self.total_pct <= ZERO:
            return interest, ZERO
        mine = round_money(interest * self.my_pct / self.total_pct)
        return mine, round_money(interest - mine)

    def to_dict(self) -> Dict[str, str]:
        return {"total_pct": str(self.total_pct), "intermediary_pct": str(self.intermediary_pct),
                "my_pct": str(self.my_pct)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'InterestSplit':
        if not data:
            return cls()
        return cls(to_decimal(data.get('total_pct') or HUNDRED),
                   to_decimal(data.get('intermediary_pct')),
                   to_decimal(data.get('my_pct')))


@dataclass
class Loan(StorageRecord):
    """Loan with its schedule and running repayment state"""
    customer_id: Optional[str]
    customer_dni: str
    customer_name: str
    kind: LoanKind
    principal: Decimal
    rate: Decimal                       # Percent per rate_period
    rate_period: Frequency
    frequency: Frequency
    start_date: date
    term_count: Optional[int] = None    # Simple loans only
    total_due: Decimal = ZERO
    installments: List[Installment] = field(default_factory=list)
    paid_total: Decimal = ZERO
    balance: Decimal = ZERO             # total_due - paid_total
    principal_outstanding: Decimal = ZERO
    paid_capital: Decimal = ZERO
    paid_interest: Decimal = ZERO
    interest_earned_mine_total: Decimal = ZERO
    interest_earned_intermediary_total: Decimal = ZERO
    has_intermediary: bool = False
    intermediary_name: str = ""
    interest_split: InterestSplit = field(default_factory=InterestSplit)
    status: LoanStatus = LoanStatus.ACTIVE
    funding_status: FundingStatus = FundingStatus.APPROVED
    funding_source_uid: Optional[str] = None
    funding_source_email: Optional[str] = None
    disbursed: bool = False
    next_due_date: Optional[date] = None
    end_date: Optional[date] = None
    voided: bool = False
    voided_at: Optional[datetime] = None
    void_reason: str = ""
    bad_debt_reason: str = ""
    created_by: Optional[str] = None
    note: str = ""

    @property
    def total_interest(self) -> Decimal:
        return clamp_zero(self.total_due - self.principal)

    @property
    def interest_ratio(self) -> Decimal:
        """Share of every collected peso attributed to interest"""
        if self.total_due <= ZERO:
            return ZERO
        return self.total_interest / self.total_due

    @property
    def behavior(self) -> 'LoanBehavior':
        return behavior_for(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['installments'] = [inst.to_dict() for inst in self.installments]
        result['interest_split'] = self.interest_split.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        def optional_date(key):
            return parse_date(data[key]) if data.get(key) else None

        frequency = Frequency.parse(data.get('frequency'))
        voided_at = data.get('voided_at')
        return cls(
            id=data['id'],
            **cls._timestamps(data),
            customer_id=data.get('customer_id'),
            customer_dni=data.get('customer_dni', ''),
            customer_name=data.get('customer_name', ''),
            kind=LoanKind.parse(data.get('kind')),
            principal=round_money(data.get('principal')),
            rate=to_decimal(data.get('rate')),
            rate_period=Frequency.parse(data.get('rate_period'), frequency),
            frequency=frequency,
            start_date=parse_date(data['start_date']),
            term_count=int(data['term_count']) if data.get('term_count') else None,
            total_due=round_money(data.get('total_due')),
            installments=normalize_installments(data.get('installments')),
            paid_total=round_money(data.get('paid_total')),
            balance=round_money(data.get('balance')),
            principal_outstanding=round_money(data.get('principal_outstanding')),
            paid_capital=round_money(data.get('paid_capital')),
            paid_interest=round_money(data.get('paid_interest')),
            interest_earned_mine_total=round_money(data.get('interest_earned_mine_total')),
            interest_earned_intermediary_total=round_money(
                data.get('interest_earned_intermediary_total')),
            has_intermediary=bool(data.get('has_intermediary')),
            intermediary_name=data.get('intermediary_name', ''),
            interest_split=InterestSplit.from_dict(data.get('interest_split')),
            status=LoanStatus(data.get('status') or LoanStatus.ACTIVE.value),
            funding_status=FundingStatus(data.get('funding_status') or FundingStatus.APPROVED.value),
            funding_source_uid=data.get('funding_source_uid'),
            funding_source_email=data.get('funding_source_email'),
            disbursed=bool(data.get('disbursed')),
            next_due_date=optional_date('next_due_date'),
            end_date=optional_date('end_date'),
            voided=bool(data.get('voided')),
            voided_at=datetime.fromisoformat(voided_at) if voided_at else None,
            void_reason=data.get('void_reason', ''),
            bad_debt_reason=data.get('bad_debt_reason', ''),
            created_by=data.get('created_by'),
            note=data.get('note', ''),
        )


@dataclass
class PaymentAllocation:
    """What a payment did to a loan"""
    amount: Decimal
    interest: Decimal
    principal: Decimal
    installment: Optional[Installment] = None
    previous_next_due_date: Optional[date] = None


def _as_date(now: Any) -> date:
    return now.date() if isinstance(now, datetime) else now


def compute_status(loan: Loan, now: Any) -> LoanStatus:
    """Status of a loan at `now`; bad_debt and void are never computed away"""
    if loan.voided or loan.status == LoanStatus.VOID:
        return LoanStatus.VOID
    if loan.status == LoanStatus.BAD_DEBT:
        return LoanStatus.BAD_DEBT
    if loan.funding_status == FundingStatus.PENDING:
        return LoanStatus.PENDING
    if loan.funding_status == FundingStatus.REJECTED:
        return LoanStatus.REJECTED
    return loan.behavior.status(loan, _as_date(now))


class LoanBehavior(ABC):
    """Kind-specific schedule, status and payment rules"""

    kind: LoanKind

    @abstractmethod
    def initialize(self, loan: Loan) -> None:
        """Set totals, schedule and outstanding for a new loan"""

    @abstractmethod
    def status(self, loan: Loan, today: date) -> LoanStatus:
        """Computed (non-sticky) status"""

    @abstractmethod
    def apply_payment(self, loan: Loan, paid_at: date, amount: Any = None,
                      interest: Any = None, principal: Any = None,
                      installment_number: Optional[int] = None) -> PaymentAllocation:
        """Apply a payment to the loan's repayment state"""

    @abstractmethod
    def apply_void(self, loan: Loan, amount: Decimal, principal: Decimal,
                   installment_number: Optional[int] = None,
                   previous_next_due_date: Optional[date] = None,
                   next_due_date_set: Optional[date] = None) -> None:
        """Undo exactly what apply_payment did"""

    def outstanding(self, loan: Loan) -> Decimal:
        """Principal still owed"""
        return clamp_zero(loan.principal_outstanding)

    def refresh(self, loan: Loan, today: date) -> None:
        """Recompute derived fields after a change"""
        loan.status = compute_status(loan, today)
        if loan.status == LoanStatus.FINISHED:
            loan.end_date = loan.end_date or today
        elif loan.status not in STICKY_STATUSES:
            loan.end_date = None


class SimpleLoanBehavior(LoanBehavior):
    kind = LoanKind.SIMPLE

    def initialize(self, loan: Loan) -> None:
        if loan.total_due <= ZERO:
            loan.total_due = compute_total_due(loan.principal, loan.rate, loan.term_count,
                                               loan.frequency, loan.rate_period)
        if loan.total_due < loan.principal:
            raise ValidationError("INVALID_AMOUNT", "Total due cannot be below principal")
        loan.installments = split_schedule(loan.total_due, loan.term_count, loan.frequency,
                                           loan.start_date)
        loan.balance = loan.total_due
        loan.principal_outstanding = loan.principal
        loan.next_due_date = next_due_date(loan.installments)

    def ensure_schedule(self, loan: Loan) -> bool:
        loan.installments, changed = ensure_installments(
            loan.installments, loan.term_count, loan.total_due, loan.paid_total,
            loan.frequency, loan.start_date)
        return changed

    def status(self, loan: Loan, today: date) -> LoanStatus:
        if loan.installments:
            if all(inst.is_paid for inst in loan.installments):
                return LoanStatus.FINISHED
        elif loan.total_due > ZERO and loan.balance <= amount_epsilon():
            return LoanStatus.FINISHED
        due = next_due_date(loan.installments) or loan.next_due_date
        if due and today > due:
            return LoanStatus.LATE
        return LoanStatus.ACTIVE

    def apply_payment(self, loan, paid_at, amount=None, interest=None, principal=None,
                      installment_number=None) -> PaymentAllocation:
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "Payment amount must be > 0")
        self.ensure_schedule(loan)
        loan.installments, updated = apply_amount(loan.installments, amount, installment_number)

        # Whole-loan interest ratio, not a per-installment breakdown
        interest_paid = round_money(amount * loan.interest_ratio)
        principal_paid = round_money(amount - interest_paid)

        self._recompute(loan, round_money(loan.paid_total + amount),
                        round_money(loan.principal_outstanding - principal_paid))
        return PaymentAllocation(amount, interest_paid, principal_paid, updated)

    def apply_void(self, loan, amount, principal, installment_number=None,
                   previous_next_due_date=None, next_due_date_set=None) -> None:
        self.ensure_schedule(loan)
        loan.installments = revert_amount(loan.installments, amount, installment_number)
        self._recompute(loan, clamp_zero(loan.paid_total - amount),
                        min(loan.principal, round_money(loan.principal_outstanding + principal)))

    def _recompute(self, loan: Loan, paid_total: Decimal, outstanding: Decimal) -> None:
        loan.paid_total = paid_total
        loan.balance = clamp_zero(loan.total_due - paid_total)
        loan.principal_outstanding = clamp_zero(outstanding)
        loan.next_due_date = next_due_date(loan.installments)


class InterestOnlyLoanBehavior(LoanBehavior):
    kind = LoanKind.INTEREST_ONLY

    def initialize(self, loan: Loan) -> None:
        loan.installments = []
        loan.term_count = None
        loan.total_due = loan.principal
        loan.balance = loan.principal
        loan.principal_outstanding = loan.principal
        loan.next_due_date = add_periods(loan.start_date, loan.frequency, 1)

    def status(self, loan: Loan, today: date) -> LoanStatus:
        if loan.principal_outstanding <= ZERO:
            return LoanStatus.FINISHED
        if loan.next_due_date and today > loan.next_due_date:
            return LoanStatus.LATE
        return LoanStatus.ACTIVE

    def apply_payment(self, loan, paid_at, amount=None, interest=None, principal=None,
                      installment_number=None) -> PaymentAllocation:
        interest = round_money(interest)
        principal = round_money(principal)
        if interest < ZERO or principal < ZERO or interest + principal <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "Interest and principal must be >= 0 and not both 0")
        if principal > loan.principal_outstanding:
            raise ConflictError("EXCEEDS_PENDING", "Principal exceeds the outstanding principal",
                                {"pending": str(loan.principal_outstanding),
                                 "requested": str(principal)})

        previous = loan.next_due_date
        loan.principal_outstanding = round_money(loan.principal_outstanding - principal)
        loan.balance = loan.principal_outstanding
        loan.paid_total = round_money(loan.paid_total + interest + principal)
        loan.next_due_date = add_periods(paid_at, loan.frequency, 1)
        return PaymentAllocation(round_money(interest + principal), interest, principal,
                                 previous_next_due_date=previous)

    def apply_void(self, loan, amount, principal, installment_number=None,
                   previous_next_due_date=None, next_due_date_set=None) -> None:
        loan.principal_outstanding = min(loan.principal,
                                         round_money(loan.principal_outstanding + principal))
        loan.balance = loan.principal_outstanding
        loan.paid_total = clamp_zero(loan.paid_total - amount)
        # Only rewind the due date if no later payment moved it again
        if previous_next_due_date and loan.next_due_date == next_due_date_set:
            loan.next_due_date = previous_next_due_date


BEHAVIORS = {
    LoanKind.SIMPLE: SimpleLoanBehavior(),
    LoanKind.INTEREST_ONLY: InterestOnlyLoanBehavior(),
}


def behavior_for(kind: LoanKind) -> LoanBehavior:
    return BEHAVIORS[kind]


class LoanManager:
    """
    Loan origination and lifecycle

    Creation, funding approval, bad-debt marking and status refresh. Payment
    application lives in PaymentProcessor and reversal in VoidCoordinator;
    both go through the same LoanBehavior objects.
    """

    def __init__(self, storage: StorageInterface, wallet_ledger: WalletLedger,
                 movements: MovementLog, counters: Optional[TreasuryCounters] = None,
                 customers=None, clock=None):
        self.storage = storage
        self.wallet_ledger = wallet_ledger
        self.movements = movements
        self.counters = counters or TreasuryCounters()
        self.customers = customers
        self.clock = clock or date.today
        self.table_name = LOANS_TABLE

    def create_loan(
        self,
        customer_id: str,
        principal: Any,
        rate: Any,
        start_date: Any,
        kind: Any = LoanKind.SIMPLE,
        term_count: Optional[int] = None,
        frequency: Any = None,
        rate_period: Any = None,
        total_due: Any = None,
        funding_source_uid: Optional[str] = None,
        funding_source_email: Optional[str] = None,
        funding_status: FundingStatus = FundingStatus.APPROVED,
        intermediary_name: Optional[str] = None,
        interest_split: Optional[Dict[str, Any]] = None,
        loan_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        note: str = ""
    ) -> Loan:
        """
        Originate a loan and, when approved, disburse it

        Args:
            customer_id: Customer id or DNI
            principal: Amount lent
            rate: Interest percentage per rate_period
            start_date: Loan start; first due date is one period later
            kind: simple or interest-only
            term_count: Number of installments (simple loans)
            frequency: weekly, biweekly or monthly
            rate_period: Period the rate is quoted in (defaults to frequency)
            total_due: Explicit total overriding the simple-interest formula
            funding_source_uid: Wallet the cash comes out of (defaults to actor)
            funding_status: APPROVED disburses now, PENDING waits for approval
            intermediary_name: Optional intermediary sharing the interest
            interest_split: {total_pct, intermediary_pct, my_pct}
            loan_id: Optional caller-chosen id
            actor_id: Identity creating the loan

        Returns:
            Created Loan
        """
        kind = LoanKind.parse(kind)
        frequency = Frequency.parse(frequency, Frequency.parse(get_config().default_frequency))
        principal = round_money(principal)
        if principal <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "Principal must be > 0")
        rate = to_decimal(rate)
        if rate < ZERO:
            raise ValidationError("INVALID_INPUT", "Rate must be >= 0")
        if kind == LoanKind.SIMPLE and (term_count is None or int(term_count) <= 0):
            raise ValidationError("INVALID_INPUT", "Simple loans need a term count > 0")

        has_intermediary = bool(intermediary_name)
        split = (InterestSplit.validated(**(interest_split or {})) if has_intermediary
                 else InterestSplit())

        customer_dni, customer_name = "", ""
        if self.customers is not None:
            customer = self.customers.resolve(customer_id)
            if customer.voided:
                raise ValidationError("INVALID_INPUT", "Customer is voided")
            customer_id, customer_dni, customer_name = customer.id, customer.dni, customer.full_name

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            customer_dni=customer_dni,
            customer_name=customer_name,
            kind=kind,
            principal=principal,
            rate=rate,
            rate_period=Frequency.parse(rate_period, frequency),
            frequency=frequency,
            start_date=parse_date(start_date),
            term_count=int(term_count) if term_count else None,
            total_due=round_money(total_due) if total_due is not None else ZERO,
            has_intermediary=has_intermediary,
            intermediary_name=intermediary_name or "",
            interest_split=split,
            funding_status=funding_status,
            funding_source_uid=funding_source_uid or actor_id,
            funding_source_email=funding_source_email,
            created_by=actor_id,
            note=note or "",
        )
        loan.behavior.initialize(loan)
        today = self.clock()
        loan.behavior.refresh(loan, today)

        def _tx(tx: Transaction) -> Loan:
            if tx.get(self.table_name, loan.id) is not None:
                raise ValidationError("INVALID_INPUT", f"Loan {loan.id} already exists")
            if loan.funding_status == FundingStatus.APPROVED:
                self._disburse(tx, loan, actor_id)
            tx.set(self.table_name, loan.id, loan.to_dict())
            self.movements.record(
                tx, MovementType.LOAN_CREATE, "loan", loan.id, actor_id=actor_id,
                occurred_at=loan.start_date, note=note,
                metadata={"customer_id": loan.customer_id, "customer_name": loan.customer_name,
                          "kind": loan.kind, "principal": loan.principal,
                          "total_due": loan.total_due, "rate": loan.rate,
                          "frequency": loan.frequency, "term_count": loan.term_count},
            )
            return loan

        result = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Loan created", user_id=actor_id, action="loan_create",
                   resource=f"loan:{result.id}",
                   extra={"kind": result.kind.value, "principal": str(result.principal),
                          "total_due": str(result.total_due)})
        return result

    def _disburse(self, tx: Transaction, loan: Loan, actor_id: Optional[str]) -> None:
        if not loan.funding_source_uid:
            raise ValidationError("INVALID_INPUT", "Loan needs a funding wallet to disburse")
        self.wallet_ledger.debit(
            tx, loan.funding_source_uid, loan.principal, f"Loan disbursement {loan.id}",
            entry_type=LedgerEntryType.LOAN_DISBURSE, email=loan.funding_source_email,
            occurred_at=loan.start_date, loan_id=loan.id, actor_id=actor_id,
        )
        self.counters.apply(tx, disbursed=loan.principal, outstanding=loan.principal,
                            liquid=-loan.principal)
        loan.disbursed = True

    def set_funding_status(self, loan_id: str, funding_status: FundingStatus,
                           actor_id: Optional[str] = None) -> Loan:
        """Approve (and disburse) or reject a pending loan"""
        def _tx(tx: Transaction) -> Loan:
            loan = self._load(tx, loan_id)
            if loan.voided:
                raise ConflictError("LOAN_VOIDED", "Loan is voided")
            if loan.funding_status != FundingStatus.PENDING:
                raise ConflictError("INVALID_INPUT", "Only pending loans can change funding status")
            loan.funding_status = funding_status
            if funding_status == FundingStatus.APPROVED:
                self._disburse(tx, loan, actor_id)
            loan.behavior.refresh(loan, self.clock())
            self._save(tx, loan)
            return loan

        loan = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Loan funding status changed", user_id=actor_id,
                   action="loan_funding", resource=f"loan:{loan_id}",
                   extra={"funding_status": funding_status.value})
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.table_name, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("LOAN_NOT_FOUND", f"Loan {loan_id} not found")
        return loan

    def list_loans(self, customer_id: Optional[str] = None,
                   include_voided: bool = False) -> List[Loan]:
        filters = {"customer_id": customer_id} if customer_id else {}
        loans = [Loan.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if not include_voided:
            loans = [loan for loan in loans if not loan.voided]
        return sorted(loans, key=lambda loan: (loan.start_date, loan.created_at))

    def mark_bad_debt(self, loan_id: str, reason: str = "", actor_id: Optional[str] = None) -> Loan:
        """Write off a late loan; the status then sticks"""
        def _tx(tx: Transaction) -> Loan:
            loan = self._load(tx, loan_id)
            status = compute_status(loan, self.clock())
            if status != LoanStatus.LATE:
                raise ConflictError("NOT_LATE", "Only late loans can be marked as bad debt",
                                    {"status": status.value})
            loan.status = LoanStatus.BAD_DEBT
            loan.bad_debt_reason = reason or ""
            self._save(tx, loan)
            self.movements.record(tx, MovementType.LOAN_BAD_DEBT, "loan", loan.id,
                                  actor_id=actor_id, occurred_at=self.clock(), note=reason,
                                  metadata={"principal_outstanding": loan.principal_outstanding,
                                            "balance": loan.balance})
            return loan

        loan = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Loan marked as bad debt", user_id=actor_id,
                   action="loan_bad_debt", resource=f"loan:{loan_id}")
        return loan

    def refresh_status(self, loan_id: str, now: Any = None) -> Loan:
        """Recompute and persist status (also repairs a drifted schedule)"""
        def _tx(tx: Transaction) -> Loan:
            loan = self._load(tx, loan_id)
            before = (loan.status, loan.to_dict()['installments'])
            if loan.kind == LoanKind.SIMPLE and not loan.voided:
                loan.behavior.ensure_schedule(loan)
                loan.next_due_date = next_due_date(loan.installments)
            loan.behavior.refresh(loan, _as_date(now) if now else self.clock())
            if (loan.status, loan.to_dict()['installments']) != before:
                self._save(tx, loan)
            return loan

        return self.storage.run_transaction(_tx)

    def pending_breakdown(self, loan: Loan) -> Dict[str, Decimal]:
        """Capital vs interest still owed"""
        if loan.voided:
            return {"capital": ZERO, "interest": ZERO, "total": ZERO}
        if loan.kind == LoanKind.INTEREST_ONLY:
            capital = clamp_zero(loan.principal_outstanding)
            return {"capital": capital, "interest": ZERO, "total": capital}

        pending = clamp_zero(loan.total_due - loan.paid_total)
        counters_cover = abs(loan.paid_capital + loan.paid_interest - loan.paid_total) <= amount_epsilon()
        if counters_cover:
            capital = clamp_zero(loan.principal - loan.paid_capital)
            interest = clamp_zero(pending - capital)
        else:
            capital_share = loan.principal / loan.total_due if loan.total_due > ZERO else ZERO
            capital = round_money(pending * capital_share)
            interest = round_money(pending - capital)
        return {"capital": capital, "interest": interest, "total": pending}

    def customer_debt(self, customer_id: str) -> Dict[str, Any]:
        """Aggregate pending amounts over a customer's non-voided loans"""
        today = self.clock()
        totals = {"capital": ZERO, "interest": ZERO, "total": ZERO}
        loans = []
        for loan in self.list_loans(customer_id=customer_id):
            breakdown = self.pending_breakdown(loan)
            for key in totals:
                totals[key] = round_money(totals[key] + breakdown[key])
            loans.append({"loan_id": loan.id, "status": compute_status(loan, today).value,
                          **breakdown})
        return {"customer_id": customer_id, "loans": loans, **totals}

    def _load(self, tx: Transaction, loan_id: str) -> Loan:
        data = tx.get(self.table_name, loan_id)
        if not data:
            raise NotFoundError("LOAN_NOT_FOUND", f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def _save(self, tx: Transaction, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        tx.set(self.table_name, loan.id, loan.to_dict())
