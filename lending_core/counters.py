"""
Treasury Counters

Incremental treasury rollups adjusted inside the transactions of the events
that move cash: loan disbursement, payment, their voids. The aggregator in
treasury.py can recompute the same numbers from scratch.
"""

from typing import Any, Optional

from .money import ZERO, to_decimal
from .storage import Transaction


SUMMARY_TABLE = "treasury_summary"
SUMMARY_ID = "summary"
USERS_TABLE = "treasury_users"


class TreasuryCounters:
    """Writes the single treasury summary row and the per-user collection rows"""

    def apply(self, tx: Transaction, collected: Any = ZERO, disbursed: Any = ZERO,
              outstanding: Any = ZERO, liquid: Any = ZERO) -> None:
        deltas = {
            "total_collected": to_decimal(collected),
            "total_disbursed": to_decimal(disbursed),
            "total_loan_outstanding": to_decimal(outstanding),
            "liquid": to_decimal(liquid),
        }
        tx.increment(SUMMARY_TABLE, SUMMARY_ID, {k: v for k, v in deltas.items() if v != ZERO})

    def apply_user(self, tx: Transaction, uid: Optional[str], payments: int,
                   collected: Any, email: Optional[str] = None) -> None:
        if not uid:
            return
        fields = {"uid": uid}
        if email:
            fields["email"] = email
        tx.increment(USERS_TABLE, uid, {"payments_count": payments,
                                        "collected": to_decimal(collected)}, fields)
