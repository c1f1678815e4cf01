"""
Monthly Profit Rollup

Interest collected per YYYY-MM month, split into the lender's share and the
intermediary's share. Adjusted by payments and their voids in the same
transaction; rebuild() recomputes a year from the payments themselves.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, List

from .logging_config import get_logger, log_action
from .money import ZERO, round_money, to_decimal
from .storage import StorageInterface, Transaction


logger = get_logger("lending.profits")

PROFIT_TABLE = "profit_monthly"


@dataclass
class MonthlyProfit:
    month: str
    mine: Decimal = ZERO
    intermediary: Decimal = ZERO
    interest_total: Decimal = ZERO
    payments_count: int = 0

    @classmethod
    def from_dict(cls, month: str, data: Dict[str, Any]) -> 'MonthlyProfit':
        data = data or {}
        return cls(
            month=month,
            mine=round_money(data.get('mine')),
            intermediary=round_money(data.get('intermediary')),
            interest_total=round_money(data.get('interest_total')),
            payments_count=int(data.get('payments_count') or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.month, "month": self.month, "mine": str(self.mine),
                "intermediary": str(self.intermediary),
                "interest_total": str(self.interest_total),
                "payments_count": self.payments_count}


class ProfitRollup:
    """Owner of the profit_monthly rows"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = PROFIT_TABLE

    def increment(self, tx: Transaction, month: str, mine: Any, intermediary: Any,
                  interest_total: Any, payments: int = 1) -> None:
        """Add (or, with negative values, remove) one payment's interest"""
        tx.increment(self.table_name, month, {
            "mine": to_decimal(mine),
            "intermediary": to_decimal(intermediary),
            "interest_total": to_decimal(interest_total),
            "payments_count": payments,
        }, {"month": month})

    def get_month(self, month: str) -> MonthlyProfit:
        return MonthlyProfit.from_dict(month, self.storage.load(self.table_name, month))

    def get_year(self, year: int) -> List[MonthlyProfit]:
        """Twelve rows, zero-filled for months without payments"""
        return [self.get_month(f"{int(year):04d}-{m:02d}") for m in range(1, 13)]

    def details(self, month: str) -> List[Any]:
        """Non-voided payments whose paid-at date falls in month"""
        # payments imports this module
        from .payments import PAYMENTS_TABLE, Payment
        rows = self.storage.find(PAYMENTS_TABLE, {"paid_month": month, "voided": False})
        return sorted((Payment.from_dict(row) for row in rows), key=lambda p: p.paid_at)

    def rebuild(self, year: int) -> List[MonthlyProfit]:
        """Recompute a year's rows from non-voided payments"""
        from .payments import PAYMENTS_TABLE, Payment

        prefix = f"{int(year):04d}-"
        months = {f"{prefix}{m:02d}": MonthlyProfit(f"{prefix}{m:02d}") for m in range(1, 13)}

        def _tx(tx: Transaction) -> List[MonthlyProfit]:
            for row in months.values():
                row.mine = row.intermediary = row.interest_total = ZERO
                row.payments_count = 0
            for data in tx.query(PAYMENTS_TABLE, [("voided", "==", False)]):
                payment = Payment.from_dict(data)
                row = months.get(payment.paid_month)
                if row is None:
                    continue
                row.mine = round_money(row.mine + payment.interest_mine)
                row.intermediary = round_money(row.intermediary + payment.interest_intermediary)
                row.interest_total = round_money(row.interest_total + payment.interest_total)
                row.payments_count += 1
            for row in months.values():
                tx.set(self.table_name, row.month, row.to_dict())
            return list(months.values())

        rows = self.storage.run_transaction(_tx)
        log_action(logger, "info", "Monthly profit rebuilt", action="profit_rebuild",
                   resource=f"profit:{year}",
                   extra={"interest_total": str(sum((r.interest_total for r in rows), ZERO))})
        return rows
