"""
Test suite for loans module

Tests loan origination for both loan kinds, disbursement, funding approval,
the status state machine and pending breakdowns. All financial math must be
precise.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.errors import ConflictError, NotFoundError, ValidationError
from lending_core.loans import FundingStatus, InterestSplit, LoanKind, LoanStatus, compute_status
from lending_core.schedule import Frequency
from lending_core.storage import InMemoryStorage
from lending_core.system import LendingSystem
from lending_core.wallets import LedgerEntryType


class TestInterestSplit:
    """Test interest sharing with an intermediary"""

    def test_valid_split(self):
        """Test a valid interest split"""
        split = InterestSplit.validated(total_pct=10, intermediary_pct=4, my_pct=6)
        assert split.split(Decimal('30000')) == (Decimal('18000.00'), Decimal('12000.00'))

    def test_my_pct_defaults_to_remainder(self):
        """Test my share defaults to the remainder"""
        split = InterestSplit.validated(total_pct=10, intermediary_pct=3)
        assert split.my_pct == Decimal('7')

    def test_shares_sum_exactly(self):
        """Test split shares add up to the interest exactly"""
        split = InterestSplit.validated(total_pct=3, intermediary_pct=1, my_pct=2)
        mine, intermediary = split.split(Decimal('100.00'))
        assert mine == Decimal('66.67')
        assert intermediary == Decimal('33.33')
        assert mine + intermediary == Decimal('100.00')

    def test_invalid_split(self):
        """Test rejecting invalid splits"""
        with pytest.raises(ValidationError, match="must equal totalPct"):
            InterestSplit.validated(total_pct=10, intermediary_pct=4, my_pct=5)
        with pytest.raises(ValidationError):
            InterestSplit.validated(total_pct=10, intermediary_pct=-1, my_pct=11)


class TestLoanCreation:
    """Test loan origination"""

    def setup_method(self):
        """Set up test fixtures"""
        self.today = date(2024, 1, 10)
        self.system = LendingSystem(storage=InMemoryStorage(), clock=lambda: self.today)
        self.customer = self.system.customer_manager.register(
            "30.123.456", "Ana Perez", phone="555-0101", actor_id="admin")

    def test_simple_loan(self):
        """Test creating a simple monthly loan"""
        loan = self.system.create_loan(self.customer.id, 300000, 10, "2024-01-10",
                                       actor_id="lender", term_count=3)

        assert loan.kind == LoanKind.SIMPLE
        assert loan.total_due == Decimal('390000.00')
        assert loan.balance == Decimal('390000.00')
        assert loan.principal_outstanding == Decimal('300000.00')
        assert [inst.amount for inst in loan.installments] == [Decimal('130000.00')] * 3
        assert loan.installments[0].due_date == date(2024, 2, 10)
        assert loan.next_due_date == date(2024, 2, 10)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.disbursed
        assert loan.customer_name == "Ana Perez"
        assert loan.customer_dni == "30123456"

        stored = self.system.loan_manager.get_loan(loan.id)
        assert stored.installments == loan.installments
        assert stored.total_due == loan.total_due

    def test_disbursement_debits_funding_wallet(self):
        """Test disbursing debits the funding wallet"""
        loan = self.system.create_loan(self.customer.id, 300000, 10, date(2024, 1, 10),
                                       actor_id="lender", term_count=3)

        wallet = self.system.wallet_ledger.get_wallet("lender")
        assert wallet.balance == Decimal('-300000.00')
        assert wallet.total_out == Decimal('300000.00')

        entries = self.system.wallet_ledger.entries_for("lender")
        assert len(entries) == 1
        assert entries[0].entry_type == LedgerEntryType.LOAN_DISBURSE
        assert entries[0].loan_id == loan.id

        summary = self.system.treasury.summary()
        assert summary.total_disbursed == Decimal('300000.00')
        assert summary.total_loan_outstanding == Decimal('300000.00')
        assert summary.liquid == Decimal('-300000.00')

    def test_explicit_funding_source(self):
        """Test funding from an explicit wallet"""
        self.system.create_loan(self.customer.id, 1000, 10, date(2024, 1, 10),
                                actor_id="clerk", term_count=2, funding_source_uid="vault")

        assert self.system.wallet_ledger.get_wallet("vault").balance == Decimal('-1000.00')
        assert self.system.wallet_ledger.get_wallet("clerk").balance == Decimal('0')

    def test_customer_resolved_by_dni(self):
        """Test resolving the customer by DNI"""
        loan = self.system.create_loan("30123456", 1000, 10, date(2024, 1, 10),
                                       actor_id="lender", term_count=2)
        assert loan.customer_id == self.customer.id

    def test_unknown_customer(self):
        """Test creating a loan for an unknown customer"""
        with pytest.raises(NotFoundError) as exc_info:
            self.system.create_loan("99999999", 1000, 10, date(2024, 1, 10),
                                    actor_id="lender", term_count=2)
        assert exc_info.value.code == "CUSTOMER_NOT_FOUND"

    def test_explicit_total_due(self):
        """Test an explicit total due"""
        loan = self.system.create_loan(self.customer.id, 350000, 0, date(2024, 1, 10),
                                       actor_id="lender", term_count=10, total_due=500000)
        assert loan.total_due == Decimal('500000.00')
        assert loan.interest_ratio == Decimal('0.3')
        assert all(inst.amount == Decimal('50000.00') for inst in loan.installments)

    def test_invalid_inputs(self):
        """Test rejecting invalid loan inputs"""
        with pytest.raises(ValidationError) as exc_info:
            self.system.create_loan(self.customer.id, 0, 10, date(2024, 1, 10),
                                    actor_id="lender", term_count=3)
        assert exc_info.value.code == "INVALID_AMOUNT"

        with pytest.raises(ValidationError):
            self.system.create_loan(self.customer.id, 1000, 10, date(2024, 1, 10),
                                    actor_id="lender")
        with pytest.raises(ValidationError):
            self.system.create_loan(self.customer.id, 1000, 10, date(2024, 1, 10),
                                    actor_id="lender", term_count=2, total_due=900)

        # Nothing was disbursed by the rejected requests
        assert self.system.wallet_ledger.list_entries() == []

    def test_duplicate_loan_id(self):
        """Test a loan id can only be used once"""
        self.system.create_loan(self.customer.id, 1000, 10, date(2024, 1, 10),
                                actor_id="lender", term_count=2, loan_id="L-1")
        with pytest.raises(ValidationError):
            self.system.create_loan(self.customer.id, 1000, 10, date(2024, 1, 10),
                                    actor_id="lender", term_count=2, loan_id="L-1")
        assert self.system.wallet_ledger.get_wallet("lender").balance == Decimal('-1000.00')

    def test_weekly_schedule(self):
        """Test a weekly installment schedule"""
        loan = self.system.create_loan(self.customer.id, 1000, 5, date(2024, 1, 1),
                                       actor_id="lender", term_count=4, frequency="weekly")
        assert loan.frequency == Frequency.WEEKLY
        assert loan.total_due == Decimal('1200.00')
        assert [inst.due_date for inst in loan.installments] == [
            date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22), date(2024, 1, 29)]

    def test_interest_only_loan(self):
        """Test creating an interest-only loan"""
        loan = self.system.create_loan(self.customer.id, 100000, 10, date(2024, 1, 10),
                                       actor_id="lender", kind="interest-only")

        assert loan.kind == LoanKind.INTEREST_ONLY
        assert loan.installments == []
        assert loan.term_count is None
        assert loan.total_due == Decimal('100000.00')
        assert loan.principal_outstanding == Decimal('100000.00')
        assert loan.next_due_date == date(2024, 2, 10)
        assert loan.status == LoanStatus.ACTIVE

    def test_american_alias(self):
        """Test the american alias for interest-only loans"""
        loan = self.system.create_loan(self.customer.id, 100000, 10, date(2024, 1, 10),
                                       actor_id="lender", kind="american")
        assert loan.kind == LoanKind.INTEREST_ONLY

    def test_intermediary(self):
        """Test a loan with an intermediary"""
        loan = self.system.create_loan(
            self.customer.id, 300000, 10, date(2024, 1, 10), actor_id="lender", term_count=3,
            intermediary_name="Juan", interest_split={"total_pct": 10, "intermediary_pct": 4,
                                                      "my_pct": 6})
        assert loan.has_intermediary
        assert loan.interest_split.intermediary_pct == Decimal('4')

        with pytest.raises(ValidationError):
            self.system.create_loan(
                self.customer.id, 300000, 10, date(2024, 1, 10), actor_id="lender",
                term_count=3, intermediary_name="Juan",
                interest_split={"total_pct": 10, "intermediary_pct": 4, "my_pct": 5})

    def test_movement_recorded(self):
        """Test a movement is recorded for the new loan"""
        loan = self.system.create_loan(self.customer.id, 1000, 10, date(2024, 1, 10),
                                       actor_id="lender", term_count=2)
        movements = self.system.movements.list_movements(entity_id=loan.id)
        assert len(movements) == 1
        assert movements[0].movement_type.value == "loan_create"
        assert movements[0].metadata["principal"] == "1000.00"


class TestFundingApproval:
    """Test pending funding and approval"""

    def setup_method(self):
        self.today = date(2024, 1, 10)
        self.system = LendingSystem(storage=InMemoryStorage(), clock=lambda: self.today)
        self.customer = self.system.customer_manager.register("30123456", "Ana Perez")
        self.loan = self.system.create_loan(
            self.customer.id, 1000, 10, date(2024, 1, 10), actor_id="lender", term_count=2,
            funding_status=FundingStatus.PENDING)

    def test_pending_loan_not_disbursed(self):
        """Test a pending loan is not disbursed"""
        assert not self.loan.disbursed
        assert self.loan.status == LoanStatus.PENDING
        assert self.system.wallet_ledger.list_entries() == []
        assert self.system.treasury.summary().total_disbursed == Decimal('0')

    def test_pending_loan_rejects_payments(self):
        """Test a pending loan rejects payments"""
        with pytest.raises(ConflictError) as exc_info:
            self.system.record_installment_payment(self.loan.id, 100, "collector")
        assert exc_info.value.code == "LOAN_PENDING_APPROVAL"

    def test_approval_disburses(self):
        """Test approving a pending loan disburses it"""
        loan = self.system.loan_manager.set_funding_status(
            self.loan.id, FundingStatus.APPROVED, actor_id="admin")

        assert loan.disbursed
        assert loan.status == LoanStatus.ACTIVE
        assert self.system.wallet_ledger.get_wallet("lender").balance == Decimal('-1000.00')
        assert self.system.treasury.summary().total_disbursed == Decimal('1000.00')

        with pytest.raises(ConflictError):
            self.system.loan_manager.set_funding_status(self.loan.id, FundingStatus.APPROVED)

    def test_rejection(self):
        """Test rejecting a pending loan"""
        loan = self.system.loan_manager.set_funding_status(self.loan.id, FundingStatus.REJECTED)
        assert loan.status == LoanStatus.REJECTED
        assert not loan.disbursed


class TestLoanStatus:
    """Test the status state machine"""

    def setup_method(self):
        self.today = date(2024, 1, 10)
        self.system = LendingSystem(storage=InMemoryStorage(), clock=lambda: self.today)
        self.customer = self.system.customer_manager.register("30123456", "Ana Perez")
        self.loan = self.system.create_loan(self.customer.id, 300000, 10, date(2024, 1, 10),
                                            actor_id="lender", term_count=3)

    def test_late_after_due_date(self):
        """Test a loan turns late after its due date"""
        assert compute_status(self.loan, date(2024, 2, 10)) == LoanStatus.ACTIVE
        assert compute_status(self.loan, date(2024, 2, 11)) == LoanStatus.LATE

        self.today = date(2024, 2, 11)
        loan = self.system.loan_manager.refresh_status(self.loan.id)
        assert loan.status == LoanStatus.LATE
        assert self.system.loan_manager.get_loan(self.loan.id).status == LoanStatus.LATE

    def test_bad_debt_only_when_late(self):
        """Test only late loans can become bad debt"""
        with pytest.raises(ConflictError) as exc_info:
            self.system.loan_manager.mark_bad_debt(self.loan.id, "gone")
        assert exc_info.value.code == "NOT_LATE"

        self.today = date(2024, 3, 1)
        loan = self.system.loan_manager.mark_bad_debt(self.loan.id, "gone", actor_id="admin")
        assert loan.status == LoanStatus.BAD_DEBT
        assert loan.bad_debt_reason == "gone"

    def test_bad_debt_is_sticky(self):
        """Test bad debt survives a refresh"""
        self.today = date(2024, 3, 1)
        self.system.loan_manager.mark_bad_debt(self.loan.id, "gone")

        self.system.record_installment_payment(self.loan.id, 130000, "collector",
                                               paid_at=date(2024, 3, 1))
        loan = self.system.loan_manager.refresh_status(self.loan.id)
        assert loan.status == LoanStatus.BAD_DEBT

    def test_refresh_repairs_drifted_schedule(self):
        """Test refresh repairs a drifted schedule"""
        data = self.system.storage.load("loans", self.loan.id)
        data["installments"] = data["installments"][:1]
        self.system.storage.save("loans", self.loan.id, data)

        loan = self.system.loan_manager.refresh_status(self.loan.id)
        assert len(loan.installments) == 3
        assert len(self.system.storage.load("loans", self.loan.id)["installments"]) == 3

    def test_unknown_loan(self):
        """Test looking up an unknown loan"""
        with pytest.raises(NotFoundError):
            self.system.loan_manager.refresh_status("nope")
        with pytest.raises(NotFoundError):
            self.system.loan_manager.require_loan("nope")


class TestPendingBreakdown:
    """Test capital vs interest still owed"""

    def setup_method(self):
        self.today = date(2024, 1, 10)
        self.system = LendingSystem(storage=InMemoryStorage(), clock=lambda: self.today)
        self.customer = self.system.customer_manager.register("30123456", "Ana Perez")
        self.loan = self.system.create_loan(self.customer.id, 300000, 10, date(2024, 1, 10),
                                            actor_id="lender", term_count=3)

    def test_new_loan(self):
        """Test the summary of a new loan"""
        breakdown = self.system.loan_manager.pending_breakdown(self.loan)
        assert breakdown == {"capital": Decimal('300000.00'), "interest": Decimal('90000.00'),
                             "total": Decimal('390000.00')}

    def test_after_payment(self):
        """Test the summary after a payment"""
        self.system.record_installment_payment(self.loan.id, 130000, "collector")
        loan = self.system.loan_manager.get_loan(self.loan.id)

        breakdown = self.system.loan_manager.pending_breakdown(loan)
        assert breakdown == {"capital": Decimal('200000.00'), "interest": Decimal('60000.00'),
                             "total": Decimal('260000.00')}

    def test_customer_debt(self):
        """Test total debt per customer"""
        self.system.create_loan(self.customer.id, 1000, 0, date(2024, 1, 10),
                                actor_id="lender", kind="interest-only")

        debt = self.system.loan_manager.customer_debt(self.customer.id)
        assert len(debt["loans"]) == 2
        assert debt["capital"] == Decimal('301000.00')
        assert debt["interest"] == Decimal('90000.00')
        assert debt["total"] == Decimal('391000.00')
