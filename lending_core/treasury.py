"""
Treasury Aggregator

Read-side rollups over the ledger, wallets, loans and payments, plus the
repair tools that recompute the incremental treasury counters from those
sources. Nothing here is on the payment hot path.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .config import get_config
from .counters import SUMMARY_ID, SUMMARY_TABLE, USERS_TABLE
from .loans import LOANS_TABLE, Loan, LoanStatus, compute_status
from .logging_config import get_logger, log_action
from .money import ZERO, round_money, to_decimal
from .payments import PAYMENTS_TABLE, Payment
from .storage import StorageInterface, Transaction
from .wallets import LedgerEntryType, Wallet, WalletLedger


logger = get_logger("lending.treasury")


@dataclass
class TreasurySummary:
    """Aggregate cash position; liquid includes the configured initial cash"""
    total_collected: Decimal = ZERO
    total_disbursed: Decimal = ZERO
    total_loan_outstanding: Decimal = ZERO
    liquid: Decimal = ZERO
    initial_cash: Decimal = ZERO


@dataclass
class WalletDiscrepancy:
    uid: str
    cached_balance: Decimal
    ledger_balance: Decimal

    @property
    def difference(self) -> Decimal:
        return round_money(self.cached_balance - self.ledger_balance)


class TreasuryAggregator:
    """Treasury totals, per-user rollups and wallet audits"""

    def __init__(self, storage: StorageInterface, wallet_ledger: WalletLedger,
                 clock: Optional[Callable[[], date]] = None):
        self.storage = storage
        self.wallet_ledger = wallet_ledger
        self.clock = clock or date.today

    @staticmethod
    def _initial_cash() -> Decimal:
        return round_money(get_config().initial_cash)

    def summary(self) -> TreasurySummary:
        """
        Current totals from the incremental counters.

        The stored liquid figure only reflects cash movements; the initial
        cash seed is added on read.
        """
        data = self.storage.load(SUMMARY_TABLE, SUMMARY_ID) or {}
        initial = self._initial_cash()
        return TreasurySummary(
            total_collected=round_money(data.get('total_collected')),
            total_disbursed=round_money(data.get('total_disbursed')),
            total_loan_outstanding=round_money(data.get('total_loan_outstanding')),
            liquid=round_money(to_decimal(data.get('liquid')) + initial),
            initial_cash=initial,
        )

    def rebuild(self) -> TreasurySummary:
        """
        Recompute the summary and per-user rows from loans and payments.

        collected = live payments, disbursed = principal of live disbursed
        loans, outstanding = their principal still owed, and
        liquid = collected - disbursed + initial cash.
        """
        def _tx(tx: Transaction) -> Dict[str, Decimal]:
            collected, disbursed, outstanding = ZERO, ZERO, ZERO
            users: Dict[str, Dict[str, Any]] = {}

            for data in tx.query(PAYMENTS_TABLE, [("voided", "==", False)]):
                payment = Payment.from_dict(data)
                collected += payment.amount_paid
                if payment.created_by:
                    row = users.setdefault(payment.created_by, {
                        "id": payment.created_by, "uid": payment.created_by,
                        "payments_count": 0, "collected": ZERO})
                    row["payments_count"] += 1
                    row["collected"] += payment.amount_paid
                    if payment.created_by_email:
                        row["email"] = payment.created_by_email

            for data in tx.query(LOANS_TABLE, [("voided", "==", False)]):
                loan = Loan.from_dict(data)
                if not loan.disbursed:
                    continue
                disbursed += loan.principal
                outstanding += loan.behavior.outstanding(loan)

            existing = {row['id']: row for row in tx.query(USERS_TABLE)}
            for uid, row in existing.items():
                if uid not in users:
                    tx.set(USERS_TABLE, uid, {**row, "payments_count": 0, "collected": "0.00"})
            for uid, row in users.items():
                tx.set(USERS_TABLE, uid, {**existing.get(uid, {}), **row,
                                          "collected": str(round_money(row["collected"]))})

            totals = {
                "total_collected": round_money(collected),
                "total_disbursed": round_money(disbursed),
                "total_loan_outstanding": round_money(outstanding),
                "liquid": round_money(collected - disbursed),
            }
            tx.set(SUMMARY_TABLE, SUMMARY_ID,
                   {"id": SUMMARY_ID, **{k: str(v) for k, v in totals.items()}})
            return totals

        totals = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Treasury summary rebuilt", action="treasury_rebuild",
                   resource=f"{SUMMARY_TABLE}:{SUMMARY_ID}",
                   extra={k: str(v) for k, v in totals.items()})
        return self.summary()

    def by_user(self) -> List[Dict[str, Any]]:
        """Collection rollup per collecting identity"""
        rows = []
        for data in self.storage.load_all(USERS_TABLE):
            rows.append({"uid": data.get('uid') or data['id'], "email": data.get('email'),
                         "payments_count": int(data.get('payments_count') or 0),
                         "collected": round_money(data.get('collected'))})
        return sorted(rows, key=lambda row: row["uid"])

    def wallets_summary(self) -> Dict[str, Any]:
        """Per-wallet snapshot plus overall totals"""
        today = self.clock()
        wallets = self.wallet_ledger.list_wallets()
        total_liquid = round_money(sum((w.balance for w in wallets), ZERO))

        capital = ZERO
        for data in self.storage.find(LOANS_TABLE, {"voided": False}):
            loan = Loan.from_dict(data)
            if compute_status(loan, today) in (LoanStatus.ACTIVE, LoanStatus.LATE):
                capital += loan.behavior.outstanding(loan)
        capital = round_money(capital)

        return {
            "wallets": [self._wallet_row(w) for w in wallets],
            "totals": {
                "total_liquid": total_liquid,
                "total_collected": self.summary().total_collected,
                "loan_capital_outstanding": capital,
                "total_general": round_money(total_liquid + capital),
            },
        }

    @staticmethod
    def _wallet_row(wallet: Wallet) -> Dict[str, Any]:
        return {"uid": wallet.uid, "email": wallet.email, "balance": wallet.balance,
                "movements_count": wallet.movements_count,
                "total_in": wallet.total_in, "total_out": wallet.total_out}

    def ledger_report(self, year: int) -> Dict[str, Any]:
        """
        Per-user and per-month totals from payment ledger entries of a year.

        Voids count negatively in the month of the payment they reverse.
        """
        prefix = f"{int(year):04d}-"
        months = {f"{prefix}{m:02d}": {"mine": ZERO, "intermediary": ZERO, "interest": ZERO,
                                       "collected": ZERO} for m in range(1, 13)}
        users: Dict[str, Dict[str, Decimal]] = {}

        for entry in self.wallet_ledger.list_entries():
            if entry.entry_type == LedgerEntryType.PAYMENT_CREDIT:
                sign, uid = Decimal('1'), entry.to_uid
            elif entry.entry_type == LedgerEntryType.PAYMENT_VOID:
                sign, uid = Decimal('-1'), entry.from_uid
            else:
                continue
            month = entry.meta.get('month')
            if month not in months:
                continue
            row = months[month]
            row["mine"] += sign * to_decimal(entry.meta.get('mine'))
            row["intermediary"] += sign * to_decimal(entry.meta.get('intermediary'))
            row["interest"] += sign * to_decimal(entry.meta.get('interest'))
            row["collected"] += sign * entry.amount
            user = users.setdefault(uid, {"collected": ZERO, "interest": ZERO})
            user["collected"] += sign * entry.amount
            user["interest"] += sign * to_decimal(entry.meta.get('interest'))

        def rounded(values: Dict[str, Decimal]) -> Dict[str, Decimal]:
            return {k: round_money(v) for k, v in values.items()}

        return {
            "year": int(year),
            "months": {month: rounded(row) for month, row in months.items()},
            "users": {uid: rounded(row) for uid, row in sorted(users.items())},
        }

    def verify_wallets(self) -> List[WalletDiscrepancy]:
        """Wallets whose cached balance differs from their signed ledger sum"""
        ledger = self.wallet_ledger.ledger_balances()
        cached = {w.uid: w.balance for w in self.wallet_ledger.list_wallets()}
        issues = []
        for uid in sorted(set(ledger) | set(cached)):
            expected = ledger.get(uid, ZERO)
            actual = cached.get(uid, ZERO)
            if expected != actual:
                issues.append(WalletDiscrepancy(uid, actual, expected))
        if issues:
            log_action(logger, "warning", "Wallet balances differ from ledger",
                       action="wallet_verify", resource="wallets",
                       extra={"wallets": [issue.uid for issue in issues]})
        return issues

    def rebuild_wallet(self, uid: str) -> Wallet:
        return self.wallet_ledger.rebuild_wallet(uid)
