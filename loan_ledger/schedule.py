"""
Installment Schedule Module

Generates monthly installment schedules for loans and plans how an existing
schedule changes when the installment count of a loan is edited.

Due dates are the origination date advanced by whole calendar months; when the
day does not exist in the target month the surplus days roll over into the
following month (January 31 plus one month is March 2 in a leap year).
Every installment of a loan carries the same amount, the repayable total
divided by the count and rounded to the currency precision.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple
import uuid

from .currency import Currency, DEFAULT_CURRENCY, ZERO, round_amount, to_decimal
from .errors import ValidationError
from .models import Installment, InstallmentStatus, utc_now


def add_months(start_date: date, months: int) -> date:
    """Add months to a date; a day past the end of the target month rolls over"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    return date(year, month, 1) + timedelta(days=start_date.day - 1)


def to_date(value: Any, field_name: str = "date") -> date:
    """Accept a date, a datetime or an ISO string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            pass
    raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD)", {"field": field_name, "value": str(value)})


def to_count(value: Any, field_name: str = "installment_count") -> int:
    """Validate an installment count: a positive whole number"""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a positive integer", {"field": field_name})
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a positive integer", {"field": field_name, "value": str(value)})
    if count != Decimal(str(value)) or count < 1:
        raise ValidationError(f"{field_name} must be a positive integer", {"field": field_name, "value": str(value)})
    return count


def validate_terms(principal: Any, repayable: Any, count: Any) -> Tuple[Decimal, Decimal, int]:
    """
    Validate and normalize loan terms.

    Returns:
        (principal, repayable, count) as (Decimal, Decimal, int)
    """
    principal = to_decimal(principal, "principal")
    repayable = to_decimal(repayable, "repayable")
    count = to_count(count)

    if principal <= ZERO:
        raise ValidationError("principal must be greater than zero", {"field": "principal"})
    if repayable <= ZERO:
        raise ValidationError("repayable must be greater than zero", {"field": "repayable"})
    if repayable < principal:
        raise ValidationError(
            "repayable must not be lower than principal",
            {"principal": str(principal), "repayable": str(repayable)}
        )
    return principal, repayable, count


def installment_amount(repayable: Decimal, count: int, currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """Per-installment amount: repayable / count rounded to currency precision"""
    return round_amount(Decimal(repayable) / Decimal(count), currency)


def initial_status(due_date: date, today: date) -> InstallmentStatus:
    """Status of a freshly scheduled installment"""
    if due_date < today:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def generate_schedule(
    principal: Any,
    repayable: Any,
    count: Any,
    origination_date: Any,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
    loan_id: str = "",
    start_sequence: int = 1,
    currency: Currency = DEFAULT_CURRENCY
) -> List[Installment]:
    """
    Generate the installments of a loan.

    Args:
        principal: Amount lent
        repayable: Total amount to be repaid
        count: Number of installments of the full schedule
        origination_date: Date the loan was issued
        today: Reference date for the Overdue check (defaults to now's date)
        now: Creation timestamp of the records (defaults to the current UTC time)
        loan_id: Owning loan, may be filled in later by the caller
        start_sequence: First sequence number to produce; values above 1 are
            used to extend an existing schedule
        currency: Currency whose precision the amount is rounded to

    Returns:
        Installments ordered by sequence number
    """
    principal, repayable, count = validate_terms(principal, repayable, count)
    origination_date = to_date(origination_date, "origination_date")
    if now is None:
        now = utc_now()
    if today is None:
        today = now.date()

    amount = installment_amount(repayable, count, currency)

    schedule = []
    for sequence in range(start_sequence, count + 1):
        due_date = add_months(origination_date, sequence)
        schedule.append(Installment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            sequence=sequence,
            amount=amount,
            due_date=due_date,
            status=initial_status(due_date, today)
        ))
    return schedule


@dataclass
class ResizePlan:
    """How an existing schedule changes for a new installment count"""
    old_count: int
    new_count: int
    remove: List[Installment]

    @property
    def append_sequences(self) -> range:
        """Sequence numbers to generate and append"""
        return range(self.old_count + 1, self.new_count + 1)

    @property
    def changed(self) -> bool:
        return self.old_count != self.new_count


def plan_resize(installments: List[Installment], new_count: int) -> ResizePlan:
    """
    Plan a schedule resize.

    Shrinking always removes the installments with the highest sequence
    numbers, whatever their status. Growing appends sequences after the
    current maximum.
    """
    ordered = sorted(installments, key=lambda i: i.sequence)
    old_count = len(ordered)
    remove = ordered[new_count:] if new_count < old_count else []
    return ResizePlan(old_count=old_count, new_count=new_count, remove=remove)
