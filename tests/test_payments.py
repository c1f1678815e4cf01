"""
Test suite for payment processing

Every payment must move the loan, the collector's wallet and ledger, the
monthly profit row, the treasury counters and the movement feed together.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.errors import ConflictError, NotFoundError, ValidationError
from lending_core.loans import LoanStatus
from lending_core.movements import MovementType
from lending_core.storage import InMemoryStorage
from lending_core.system import LendingSystem
from lending_core.wallets import LedgerEntryType


def stored_documents(storage):
    return {table: rows for table, rows in storage.get_all_data().items() if rows}


class TestInstallmentPayments:
    """Test payments on simple loans"""

    def setup_method(self):
        """Set up test fixtures"""
        self.today = date(2024, 1, 10)
        self.system = LendingSystem(storage=InMemoryStorage(), clock=lambda: self.today)
        self.customer = self.system.customer_manager.register("30123456", "Ana Perez")
        self.loan = self.system.create_loan(self.customer.id, 300000, 10, date(2024, 1, 10),
                                            actor_id="lender", term_count=3)

    def test_full_installment(self):
        """Test paying a full installment"""
        result = self.system.record_installment_payment(
            self.loan.id, 130000, "collector", payment_id="p1", paid_at=date(2024, 2, 5))

        assert result.payment_id == "p1"
        assert not result.already_exists
        assert result.loan_status == LoanStatus.ACTIVE
        assert result.installment_updated.number == 1
        assert result.installment_updated.paid_total == Decimal('130000.00')
        assert result.installment_updated.pending_amount == Decimal('0')

        payment = self.system.payment_processor.get_payment("p1")
        assert payment.amount_paid == Decimal('130000.00')
        assert payment.interest_total == Decimal('30000.00')
        assert payment.principal_paid == Decimal('100000.00')
        assert payment.interest_mine == Decimal('30000.00')
        assert payment.interest_intermediary == Decimal('0')
        assert payment.paid_month == "2024-02"
        assert payment.installment_number == 1

        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.paid_total == Decimal('130000.00')
        assert loan.balance == Decimal('260000.00')
        assert loan.principal_outstanding == Decimal('200000.00')
        assert loan.paid_interest == Decimal('30000.00')
        assert loan.next_due_date == date(2024, 3, 10)

    def test_side_effects(self):
        """Test wallet, rollup and movement side effects"""
        self.system.record_installment_payment(
            self.loan.id, 130000, "collector", payment_id="p1", paid_at=date(2024, 2, 5),
            actor_email="collector@example.com")

        wallet = self.system.wallet_ledger.get_wallet("collector")
        assert wallet.balance == Decimal('130000.00')
        assert wallet.email == "collector@example.com"
        entries = self.system.wallet_ledger.entries_for("collector")
        assert [e.entry_type for e in entries] == [LedgerEntryType.PAYMENT_CREDIT]
        assert entries[0].meta["interest"] == "30000.00"
        assert entries[0].payment_id == "p1"

        month = self.system.profits.get_month("2024-02")
        assert month.mine == Decimal('30000.00')
        assert month.interest_total == Decimal('30000.00')
        assert month.payments_count == 1

        summary = self.system.treasury.summary()
        assert summary.total_collected == Decimal('130000.00')
        assert summary.total_loan_outstanding == Decimal('200000.00')
        assert summary.liquid == Decimal('-170000.00')

        users = self.system.treasury.by_user()
        assert users == [{"uid": "collector", "email": "collector@example.com",
                          "payments_count": 1, "collected": Decimal('130000.00')}]

        assert self.system.storage.exists("loan_payments", f"{self.loan.id}_p1")
        movements = self.system.movements.list_movements(MovementType.PAYMENT_CREATE)
        assert [m.entity_id for m in movements] == ["p1"]

    def test_idempotent_retry(self):
        """Test retrying a payment id is a no-op"""
        self.system.record_installment_payment(self.loan.id, 130000, "collector", payment_id="p1")
        result = self.system.record_installment_payment(self.loan.id, 130000, "collector",
                                                        payment_id="p1")

        assert result.already_exists
        assert result.installment_updated.number == 1
        assert self.system.wallet_ledger.get_wallet("collector").balance == Decimal('130000.00')
        assert len(self.system.payment_processor.list_payments(self.loan.id)) == 1
        assert self.system.profits.get_month("2024-01").payments_count == 1

    def test_exceeds_pending_writes_nothing(self):
        """Test an overpayment writes nothing"""
        before = stored_documents(self.system.storage)

        with pytest.raises(ConflictError) as exc_info:
            self.system.record_installment_payment(self.loan.id, Decimal('130000.01'), "collector")
        assert exc_info.value.code == "EXCEEDS_PENDING"

        assert stored_documents(self.system.storage) == before

    def test_partial_payment_on_chosen_installment(self):
        """Test a partial payment on a chosen installment"""
        result = self.system.record_installment_payment(
            self.loan.id, 50000, "collector", installment_number=2)

        assert result.installment_updated.number == 2
        assert result.installment_updated.pending_amount == Decimal('80000.00')

        payment = self.system.payment_processor.get_payment(result.payment_id)
        assert payment.interest_total == Decimal('11538.46')
        assert payment.principal_paid == Decimal('38461.54')

        # Installment 1 is still the earliest unpaid one
        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.next_due_date == date(2024, 2, 10)

    def test_final_payment_finishes_loan(self):
        """Test the final payment finishes the loan"""
        for paid_at in [date(2024, 2, 5), date(2024, 3, 5), date(2024, 4, 5)]:
            result = self.system.record_installment_payment(
                self.loan.id, 130000, "collector", paid_at=paid_at)

        assert result.loan_status == LoanStatus.FINISHED
        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.balance == Decimal('0')
        assert loan.principal_outstanding == Decimal('0')
        assert loan.next_due_date is None
        assert loan.end_date == date(2024, 4, 5)
        assert loan.paid_interest == Decimal('90000.00')

        with pytest.raises(ValidationError) as exc_info:
            self.system.record_installment_payment(self.loan.id, 1, "collector")
        assert exc_info.value.code == "INVALID_INSTALLMENT"

    def test_invalid_requests(self):
        """Test rejecting invalid payment requests"""
        with pytest.raises(ValidationError) as exc_info:
            self.system.record_installment_payment(self.loan.id, 0, "collector")
        assert exc_info.value.code == "INVALID_AMOUNT"

        with pytest.raises(ValidationError):
            self.system.record_installment_payment(self.loan.id, 100, "")

        with pytest.raises(NotFoundError) as exc_info:
            self.system.record_installment_payment("missing", 100, "collector")
        assert exc_info.value.code == "LOAN_NOT_FOUND"

        with pytest.raises(ConflictError) as exc_info:
            self.system.record_interest_only_payment(self.loan.id, 100, 0, "collector")
        assert exc_info.value.code == "LOAN_NOT_INTEREST_ONLY"

    def test_intermediary_share(self):
        """Test the intermediary share of the interest"""
        loan = self.system.create_loan(
            self.customer.id, 300000, 10, date(2024, 1, 10), actor_id="lender", term_count=3,
            intermediary_name="Juan",
            interest_split={"total_pct": 10, "intermediary_pct": 4, "my_pct": 6})

        result = self.system.record_installment_payment(loan.id, 130000, "collector",
                                                        paid_at=date(2024, 2, 5))

        payment = self.system.payment_processor.get_payment(result.payment_id)
        assert payment.interest_mine == Decimal('18000.00')
        assert payment.interest_intermediary == Decimal('12000.00')

        month = self.system.profits.get_month("2024-02")
        assert month.mine == Decimal('18000.00')
        assert month.intermediary == Decimal('12000.00')

        loan = self.system.loan_manager.get_loan(loan.id)
        assert loan.interest_earned_mine_total == Decimal('18000.00')
        assert loan.interest_earned_intermediary_total == Decimal('12000.00')

    def test_list_payments(self):
        """Test listing payments for a loan"""
        self.system.record_installment_payment(self.loan.id, 130000, "collector",
                                               payment_id="b", paid_at=date(2024, 3, 1))
        self.system.record_installment_payment(self.loan.id, 130000, "collector",
                                               payment_id="a", paid_at=date(2024, 2, 1))

        payments = self.system.payment_processor.list_payments(self.loan.id)
        assert [p.id for p in payments] == ["a", "b"]


class TestInterestOnlyPayments:
    """Test payments on interest-only loans"""

    def setup_method(self):
        self.today = date(2024, 1, 10)
        self.system = LendingSystem(storage=InMemoryStorage(), clock=lambda: self.today)
        self.customer = self.system.customer_manager.register("30123456", "Ana Perez")
        self.loan = self.system.create_loan(self.customer.id, 100000, 10, date(2024, 1, 10),
                                            actor_id="lender", kind="interest-only")

    def test_interest_payment_moves_due_date(self):
        """Test an interest payment moves the due date"""
        result = self.system.record_interest_only_payment(
            self.loan.id, 10000, 0, "collector", payment_id="i1", paid_at=date(2024, 2, 8))

        assert result.principal_outstanding == Decimal('100000.00')
        assert result.loan_status == LoanStatus.ACTIVE

        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.next_due_date == date(2024, 3, 8)

        payment = self.system.payment_processor.get_payment("i1")
        assert payment.amount_paid == Decimal('10000.00')
        assert payment.interest_total == Decimal('10000.00')
        assert payment.principal_paid == Decimal('0')
        assert payment.installment_number is None
        assert payment.previous_next_due_date == date(2024, 2, 10)
        assert payment.next_due_date_set == date(2024, 3, 8)

        assert self.system.profits.get_month("2024-02").interest_total == Decimal('10000.00')
        assert self.system.wallet_ledger.get_wallet("collector").balance == Decimal('10000.00')

    def test_principal_reduction(self):
        """Test paying down principal"""
        result = self.system.record_interest_only_payment(self.loan.id, 10000, 40000, "collector")

        assert result.principal_outstanding == Decimal('60000.00')
        summary = self.system.treasury.summary()
        assert summary.total_loan_outstanding == Decimal('60000.00')
        assert summary.total_collected == Decimal('50000.00')

    def test_full_principal_finishes(self):
        """Test repaying all principal finishes the loan"""
        result = self.system.record_interest_only_payment(
            self.loan.id, 0, 100000, "collector", paid_at=date(2024, 1, 20))

        assert result.principal_outstanding == Decimal('0')
        assert result.loan_status == LoanStatus.FINISHED
        assert self.system.loan_manager.get_loan(self.loan.id).end_date == date(2024, 1, 20)

    def test_invalid_amounts(self):
        """Test rejecting invalid amounts"""
        with pytest.raises(ConflictError) as exc_info:
            self.system.record_interest_only_payment(self.loan.id, 0, Decimal('100000.01'),
                                                     "collector")
        assert exc_info.value.code == "EXCEEDS_PENDING"

        with pytest.raises(ValidationError):
            self.system.record_interest_only_payment(self.loan.id, 0, 0, "collector")
        with pytest.raises(ValidationError):
            self.system.record_interest_only_payment(self.loan.id, -5, 10, "collector")

    def test_wrong_kind(self):
        """Test an interest-only loan refuses installment payments"""
        with pytest.raises(ConflictError) as exc_info:
            self.system.record_installment_payment(self.loan.id, 100, "collector")
        assert exc_info.value.code == "LOAN_NOT_SIMPLE"

    def test_idempotent_retry(self):
        """Test retrying an interest-only payment id is a no-op"""
        self.system.record_interest_only_payment(self.loan.id, 10000, 0, "collector",
                                                 payment_id="i1")
        result = self.system.record_interest_only_payment(self.loan.id, 10000, 0, "collector",
                                                          payment_id="i1")
        assert result.already_exists
        assert self.system.wallet_ledger.get_wallet("collector").balance == Decimal('10000.00')
