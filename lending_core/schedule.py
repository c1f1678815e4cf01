"""
Installment Schedule Module

Simple-interest total computation, cent-exact installment schedules, due
date arithmetic and schedule repair for fixed-term loans.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import calendar

from .errors import ConflictError, ValidationError
from .money import HUNDRED, ZERO, amount_epsilon, clamp_zero, parse_date, round_money, split_cents, to_decimal


class Frequency(Enum):
    """Installment / rate periods"""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @property
    def per_month(self) -> Decimal:
        """How many of this period fit in a month (rate conversion factor)"""
        return {
            Frequency.WEEKLY: Decimal('4'),
            Frequency.BIWEEKLY: Decimal('2'),
            Frequency.MONTHLY: Decimal('1'),
        }[self]

    @property
    def months(self) -> Decimal:
        """Length of one period expressed in months"""
        return Decimal('1') / self.per_month

    @classmethod
    def parse(cls, value: Any, default: Optional['Frequency'] = None) -> 'Frequency':
        if isinstance(value, Frequency):
            return value
        if value is None or value == "":
            return default or cls.MONTHLY
        text = str(value).strip().lower()
        aliases = {"bi_weekly": "biweekly", "quincenal": "biweekly",
                   "semanal": "weekly", "mensual": "monthly"}
        text = aliases.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValidationError("INVALID_INPUT", f"Unknown frequency: {value}")


@dataclass
class Installment:
    """Single entry in an installment schedule"""
    number: int
    due_date: date
    amount: Decimal
    paid_total: Decimal = ZERO

    @property
    def pending(self) -> Decimal:
        return clamp_zero(self.amount - self.paid_total)

    @property
    def is_paid(self) -> bool:
        if self.amount <= ZERO:
            return self.paid_total > ZERO
        return self.paid_total >= self.amount - amount_epsilon()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'number': self.number,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'amount': str(self.amount),
            'paid_total': str(self.paid_total),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        due = data.get('due_date')
        return cls(
            number=int(data.get('number') or 0),
            due_date=parse_date(due) if due else None,
            amount=round_money(data.get('amount')),
            paid_total=round_money(data.get('paid_total')),
        )


def add_months(start: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's length"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_periods(start: date, frequency: Frequency, count: int = 1) -> date:
    """
    Advance a date by `count` periods.

    Weekly periods are 7 days and biweekly periods 15 days; monthly periods
    keep the start's day-of-month (clamped), so Jan 31 + 2 months is Mar 31.
    """
    if frequency == Frequency.WEEKLY:
        return start + timedelta(days=7 * count)
    if frequency == Frequency.BIWEEKLY:
        return start + timedelta(days=15 * count)
    return add_months(start, count)


def convert_rate(rate: Any, from_period: Frequency, to_period: Frequency) -> Decimal:
    """Convert a per-period rate through its monthly equivalent"""
    monthly = to_decimal(rate) * from_period.per_month
    return monthly / to_period.per_month


def compute_total_due(principal: Any, rate: Any, term_count: int,
                      term_period: Frequency = Frequency.MONTHLY,
                      rate_period: Optional[Frequency] = None) -> Decimal:
    """
    Simple-interest total due.

    total = principal * (1 + monthly_rate * months_equivalent), where rate is
    a percentage per rate_period (defaults to term_period).
    """
    principal = to_decimal(principal)
    rate = to_decimal(rate)
    if principal <= ZERO:
        raise ValidationError("INVALID_AMOUNT", "Principal must be > 0")
    if rate < ZERO:
        raise ValidationError("INVALID_INPUT", "Rate must be >= 0")
    if term_count is None or int(term_count) <= 0:
        raise ValidationError("INVALID_INPUT", "Term count must be > 0")

    monthly_rate = convert_rate(rate / HUNDRED, rate_period or term_period, Frequency.MONTHLY)
    months_equivalent = Decimal(int(term_count)) * term_period.months
    return round_money(principal * (Decimal('1') + monthly_rate * months_equivalent))


def split_schedule(total_due: Any, term_count: int, frequency: Frequency,
                   start_date: date) -> List[Installment]:
    """Split a total into term_count cent-exact installments, remainder on the last"""
    if term_count is None or int(term_count) <= 0:
        raise ValidationError("INVALID_INPUT", "Term count must be > 0")
    amounts = split_cents(total_due, int(term_count))
    return [
        Installment(number=i + 1, due_date=add_periods(start_date, frequency, i + 1), amount=amount)
        for i, amount in enumerate(amounts)
    ]


def build_schedule(principal: Any, rate: Any, term_count: int, frequency: Frequency,
                   start_date: date, rate_period: Optional[Frequency] = None) -> List[Installment]:
    """Compute the simple-interest total and split it into installments"""
    total = compute_total_due(principal, rate, term_count, frequency, rate_period)
    return split_schedule(total, term_count, frequency, start_date)


def apply_paid_total(installments: List[Installment], paid_total: Any) -> List[Installment]:
    """Distribute a cumulative paid amount over installments in order"""
    remaining = round_money(paid_total)
    result = []
    for inst in installments:
        paid = min(inst.amount, remaining) if remaining > ZERO else ZERO
        remaining = round_money(remaining - paid)
        result.append(Installment(inst.number, inst.due_date, inst.amount, round_money(paid)))
    return result


def installments_paid_sum(installments: List[Installment]) -> Decimal:
    return round_money(sum((inst.paid_total for inst in installments), ZERO))


def normalize_installments(raw: Optional[List[Dict[str, Any]]]) -> List[Installment]:
    """Parse stored installments, dropping unusable rows and sorting by number"""
    items = []
    for row in raw or []:
        if not isinstance(row, dict):
            continue
        try:
            inst = Installment.from_dict(row)
        except ValueError:
            continue
        if inst.number > 0:
            items.append(inst)
    return sorted(items, key=lambda inst: inst.number)


def ensure_installments(installments: List[Installment], term_count: Optional[int],
                        total_due: Any, paid_total: Any, frequency: Frequency,
                        start_date: Optional[date]) -> Tuple[List[Installment], bool]:
    """
    Repair a schedule so it satisfies the loan's invariants.

    Rebuilds when the count is wrong or a row has a zero amount or no due
    date; re-applies paid_total when the installment paid sum drifted from it
    by more than the amount epsilon. Returns (installments, changed).
    """
    term_count = int(term_count or 0)
    invalid = (
        term_count <= 0
        or len(installments) != term_count
        or any(inst.amount <= ZERO or inst.due_date is None for inst in installments)
    )
    if invalid:
        if term_count <= 0 or to_decimal(total_due) <= ZERO or start_date is None:
            raise ConflictError("SCHEDULE_UNAVAILABLE", "Loan has no usable installment schedule")
        rebuilt = split_schedule(total_due, term_count, frequency, start_date)
        return apply_paid_total(rebuilt, paid_total), True

    if abs(installments_paid_sum(installments) - round_money(paid_total)) > amount_epsilon():
        return apply_paid_total(installments, paid_total), True
    return installments, False


def next_due_date(installments: List[Installment]) -> Optional[date]:
    """Due date of the earliest unpaid installment"""
    for inst in installments:
        if not inst.is_paid:
            return inst.due_date
    return None


def select_installment(installments: List[Installment], number: Optional[int] = None) -> int:
    """Index of the requested installment, or of the earliest one still pending"""
    if number is not None:
        for index, inst in enumerate(installments):
            if inst.number == int(number):
                return index
    else:
        for index, inst in enumerate(installments):
            if inst.pending > ZERO:
                return index
    raise ValidationError("INVALID_INSTALLMENT", "No payable installment found",
                          {"installment_number": number})


def apply_amount(installments: List[Installment], amount: Any,
                 number: Optional[int] = None) -> Tuple[List[Installment], Installment]:
    """Apply a payment amount to one installment; never exceeds its pending balance"""
    amount = round_money(amount)
    index = select_installment(installments, number)
    target = installments[index]
    if amount > target.pending:
        raise ConflictError("EXCEEDS_PENDING", "Amount exceeds the installment's pending balance",
                            {"installment_number": target.number,
                             "pending": str(target.pending), "requested": str(amount)})
    updated = Installment(target.number, target.due_date, target.amount,
                          round_money(target.paid_total + amount))
    result = list(installments)
    result[index] = updated
    return result, updated


def revert_amount(installments: List[Installment], amount: Any,
                  number: Optional[int] = None) -> List[Installment]:
    """
    Remove a previously applied amount.

    Takes it from the given installment first; anything left (a legacy
    payment without installment number) comes off the latest paid rows.
    """
    remaining = round_money(amount)
    result = list(installments)
    order = list(range(len(result) - 1, -1, -1))
    if number is not None:
        preferred = [i for i, inst in enumerate(result) if inst.number == int(number)]
        order = preferred + [i for i in order if i not in preferred]
    for index in order:
        if remaining <= ZERO:
            break
        inst = result[index]
        taken = min(inst.paid_total, remaining)
        if taken <= ZERO:
            continue
        result[index] = Installment(inst.number, inst.due_date, inst.amount,
                                    round_money(inst.paid_total - taken))
        remaining = round_money(remaining - taken)
    return result
