"""
Lending System Facade

Wires storage, configuration, logging and every component, and exposes the
operations the outer request layer calls.
"""

from datetime import date
from typing import Any, Callable, Optional

from .config import get_config
from .counters import TreasuryCounters
from .currency_lots import BuyResult, CurrencyInventory, SellResult
from .customers import CustomerManager
from .loans import Loan, LoanManager
from .logging_config import setup_logging
from .movements import MovementLog
from .payments import InstallmentPaymentResult, InterestOnlyPaymentResult, PaymentProcessor
from .profits import ProfitRollup
from .storage import StorageInterface, StorageManager
from .treasury import TreasuryAggregator
from .voids import VoidCoordinator, VoidResult
from .wallets import LedgerEntry, WalletLedger


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 clock: Optional[Callable[[], date]] = None,
                 configure_logging: bool = False):
        config = get_config()
        if configure_logging:
            setup_logging(config.log_level, log_format=config.log_format,
                          log_file=config.log_file)

        # Initialize storage
        self.storage = storage or StorageManager.from_url(config.database_url).storage
        self.clock = clock or date.today

        # Initialize core components
        self.movements = MovementLog(self.storage)
        self.counters = TreasuryCounters()
        self.wallet_ledger = WalletLedger(self.storage, self.movements)
        self.customer_manager = CustomerManager(self.storage, self.movements, clock=self.clock)
        self.loan_manager = LoanManager(self.storage, self.wallet_ledger, self.movements,
                                        self.counters, self.customer_manager, clock=self.clock)
        self.profits = ProfitRollup(self.storage)
        self.payment_processor = PaymentProcessor(self.storage, self.wallet_ledger, self.profits,
                                                  self.movements, self.counters, clock=self.clock)
        self.inventory = CurrencyInventory(self.storage, self.movements, clock=self.clock)
        self.void_coordinator = VoidCoordinator(self.storage, self.wallet_ledger, self.profits,
                                                self.movements, self.inventory, self.counters,
                                                clock=self.clock)
        self.treasury = TreasuryAggregator(self.storage, self.wallet_ledger, clock=self.clock)

    def create_loan(self, customer_id: str, principal: Any, rate: Any, start_date: Any,
                    actor_id: str, **options) -> Loan:
        return self.loan_manager.create_loan(customer_id, principal, rate, start_date,
                                             actor_id=actor_id, **options)

    def record_installment_payment(self, loan_id: str, amount: Any, actor_id: str,
                                   payment_id: Optional[str] = None,
                                   installment_number: Optional[int] = None,
                                   paid_at: Any = None, method: str = "cash",
                                   note: str = "", actor_email: Optional[str] = None
                                   ) -> InstallmentPaymentResult:
        return self.payment_processor.record_installment_payment(
            loan_id, amount, actor_id, paid_at=paid_at, method=method, note=note,
            payment_id=payment_id, installment_number=installment_number,
            actor_email=actor_email)

    def record_interest_only_payment(self, loan_id: str, interest_paid: Any, principal_paid: Any,
                                     actor_id: str, payment_id: Optional[str] = None,
                                     paid_at: Any = None, method: str = "cash", note: str = "",
                                     actor_email: Optional[str] = None
                                     ) -> InterestOnlyPaymentResult:
        return self.payment_processor.record_interest_only_payment(
            loan_id, interest_paid, principal_paid, actor_id, paid_at=paid_at, method=method,
            note=note, payment_id=payment_id, actor_email=actor_email)

    def void_payment(self, payment_id: str, reason: str, actor_id: str) -> VoidResult:
        return self.void_coordinator.void_payment(payment_id, reason, actor_id)

    def void_loan(self, loan_id: str, reason: str, actor_id: str,
                  with_payments: bool = False) -> VoidResult:
        return self.void_coordinator.void_loan(loan_id, reason, actor_id, with_payments)

    def buy_currency(self, qty: Any, unit_price: Any, note: str = "", occurred_at: Any = None,
                     actor_id: Optional[str] = None) -> BuyResult:
        return self.inventory.buy(qty, unit_price, note, occurred_at, actor_id)

    def sell_currency(self, qty: Any, unit_price: Any, note: str = "", occurred_at: Any = None,
                      actor_id: Optional[str] = None) -> SellResult:
        return self.inventory.sell(qty, unit_price, note, occurred_at, actor_id)

    def void_currency_movement(self, movement_id: str, reason: str = "",
                               actor_id: Optional[str] = None) -> VoidResult:
        return self.void_coordinator.void_currency_movement(movement_id, reason, actor_id)

    def transfer_wallet(self, from_uid: str, to_uid: str, amount: Any, note: str = "",
                        actor_id: Optional[str] = None) -> LedgerEntry:
        return self.wallet_ledger.transfer(from_uid, to_uid, amount, note, actor_id)

    def close(self) -> None:
        self.storage.close()
