"""
Customer Aggregates Module

Keeps the derived customer rollups consistent with the loans and installments
they summarize. Three entry points change stored aggregates:

- full recompute, a live aggregation over the customer's loans
- incremental adjustment after a single installment status toggle
- decrement on loan deletion, using the loan's last-known values

All three are built on the same per-loan contribution so that the incremental
paths land exactly where a full recompute would.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, fields
from typing import Callable, Dict, Iterable, List, Optional

from .currency import Currency, DEFAULT_CURRENCY, ZERO, round_amount
from .logging_config import get_logger
from .models import (
    CustomerAggregates, Customer, Loan, LoanStatus, Installment, InstallmentStatus, utc_now
)
from .repository import LedgerRepository


logger = get_logger(__name__)


def realized_profit(loan: Loan, paid_count: int, currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """Profit realized by a loan with paid_count installments paid, rounded once to cents"""
    return round_amount(loan.profit * Decimal(paid_count) / Decimal(loan.installment_count), currency)


def loan_contribution(loan: Loan, installments: Iterable[Installment],
                      currency: Currency = DEFAULT_CURRENCY) -> CustomerAggregates:
    """What a single loan adds to its customer's aggregates"""
    paid_count = 0
    overdue_count = 0
    for installment in installments:
        if installment.status == InstallmentStatus.PAID:
            paid_count += 1
        elif installment.status == InstallmentStatus.OVERDUE:
            overdue_count += 1

    return CustomerAggregates(
        total_loans=1,
        open_loans=0 if loan.is_paid else 1,
        paid_loans=1 if loan.is_paid else 0,
        overdue_loans=1 if overdue_count else 0,
        total_lent=loan.principal,
        total_profit=realized_profit(loan, paid_count, currency),
        overdue_installments=overdue_count,
        largest_loan=loan.principal,
    )


def combine(base: CustomerAggregates, other: CustomerAggregates, sign: int = 1) -> CustomerAggregates:
    """Add (sign=1) or subtract (sign=-1) one aggregate from another; largest_loan takes the max"""
    values = {}
    for f in fields(base):
        if f.name == 'largest_loan':
            values[f.name] = max(base.largest_loan, other.largest_loan) if sign > 0 else base.largest_loan
        else:
            values[f.name] = getattr(base, f.name) + sign * getattr(other, f.name)
    return CustomerAggregates(**values)


@dataclass
class InstallmentChange:
    """Before/after view of a single installment toggle"""
    loan: Loan
    old_status: InstallmentStatus
    new_status: InstallmentStatus
    overdue_before: int                 # Overdue installments in the loan before the toggle
    overdue_after: int                  # ... and after
    paid_before: int                    # Paid installments in the loan before the toggle
    paid_after: int                     # ... and after
    loan_status_before: LoanStatus
    loan_status_after: LoanStatus

    @property
    def is_noop(self) -> bool:
        return (self.old_status == self.new_status
                and self.loan_status_before == self.loan_status_after)


class AggregateRecalculator:
    """
    Computes and maintains customer aggregates
    """

    def __init__(
        self,
        repository: LedgerRepository,
        currency: Currency = DEFAULT_CURRENCY,
        clock: Callable[[], datetime] = utc_now
    ):
        self.repository = repository
        self.currency = currency
        self.clock = clock

    # Full recompute

    def compute(self, customer_id: str) -> CustomerAggregates:
        """
        Aggregate a customer's loans and installments from the store.

        Args:
            customer_id: Customer to aggregate

        Returns:
            Freshly computed CustomerAggregates (not persisted)
        """
        self.repository.get_customer(customer_id)
        return self._aggregate_loans(self.repository.loans_for_customer(customer_id))

    def refresh(self, customer_id: str) -> CustomerAggregates:
        """Recompute a customer's aggregates and persist them"""
        customer = self.repository.get_customer(customer_id)
        aggregates = self._aggregate_loans(self.repository.loans_for_customer(customer_id))
        self._store(customer, aggregates)
        return aggregates

    def _aggregate_loans(self, loans: List[Loan]) -> CustomerAggregates:
        total = CustomerAggregates()
        for loan in loans:
            installments = self.repository.installments_for_loan(loan.id)
            total = combine(total, loan_contribution(loan, installments, self.currency))
        return self._normalized(total)

    # Incremental adjustment

    def apply_installment_change(self, change: InstallmentChange) -> CustomerAggregates:
        """
        Adjust stored aggregates for one installment status toggle.

        Profit moves by the difference between the loan's realized profit
        at its new and old paid counts. The overdue-installment counter moves by one when it
        enters or leaves Overdue, the overdue-loan counter when the loan's
        last Overdue installment clears or its first one appears.
        """
        customer = self.repository.get_customer(change.loan.customer_id)
        aggregates = customer.aggregates
        if change.is_noop:
            return aggregates

        overdue = InstallmentStatus.OVERDUE

        aggregates.total_profit += (
            realized_profit(change.loan, change.paid_after, self.currency)
            - realized_profit(change.loan, change.paid_before, self.currency)
        )

        if change.old_status != overdue and change.new_status == overdue:
            aggregates.overdue_installments += 1
        elif change.old_status == overdue and change.new_status != overdue:
            aggregates.overdue_installments -= 1

        if change.overdue_before == 0 and change.overdue_after > 0:
            aggregates.overdue_loans += 1
        elif change.overdue_before > 0 and change.overdue_after == 0:
            aggregates.overdue_loans -= 1

        was_paid = change.loan_status_before == LoanStatus.PAID
        is_paid = change.loan_status_after == LoanStatus.PAID
        if was_paid != is_paid:
            delta = 1 if is_paid else -1
            aggregates.paid_loans += delta
            aggregates.open_loans -= delta

        aggregates = self._normalized(aggregates)
        self._store(customer, aggregates)
        return aggregates

    # Decrement on delete

    def remove_loan(self, loan: Loan, installments: List[Installment]) -> CustomerAggregates:
        """
        Subtract a loan's contribution before it is deleted.

        Every field is clamped at zero. When the loan held the customer's
        largest principal, the maximum is re-queried from the remaining loans.
        """
        customer = self.repository.get_customer(loan.customer_id)
        contribution = loan_contribution(loan, installments, self.currency)
        aggregates = combine(customer.aggregates, contribution, sign=-1)

        if loan.principal >= customer.aggregates.largest_loan:
            remaining = [
                other.principal
                for other in self.repository.loans_for_customer(loan.customer_id)
                if other.id != loan.id
            ]
            aggregates.largest_loan = max(remaining, default=ZERO)

        aggregates = self._normalized(aggregates)
        self._store(customer, aggregates)
        return aggregates

    # Delinquency refresh (overdue sweep)

    def refresh_delinquency(self, customer_ids: Optional[Iterable[str]] = None) -> int:
        """
        Recompute the overdue-installment and overdue-loan counters.

        Uses one pass over loans and Overdue installments rather than a
        per-customer query so the cost stays proportional to ledger size.

        Returns:
            Number of customers whose counters changed
        """
        loan_owner: Dict[str, str] = {loan.id: loan.customer_id for loan in self.repository.all_loans()}

        overdue_installments: Dict[str, int] = {}
        overdue_loans: Dict[str, set] = {}
        for installment in self.repository.installments_with_status(InstallmentStatus.OVERDUE):
            owner = loan_owner.get(installment.loan_id)
            if owner is None:
                continue
            overdue_installments[owner] = overdue_installments.get(owner, 0) + 1
            overdue_loans.setdefault(owner, set()).add(installment.loan_id)

        if customer_ids is None:
            customers = self.repository.all_customers()
        else:
            customers = [self.repository.get_customer(customer_id) for customer_id in customer_ids]

        updated = 0
        for customer in customers:
            aggregates = customer.aggregates
            new_installments = overdue_installments.get(customer.id, 0)
            new_loans = len(overdue_loans.get(customer.id, ()))
            if (aggregates.overdue_installments, aggregates.overdue_loans) == (new_installments, new_loans):
                continue
            aggregates.overdue_installments = new_installments
            aggregates.overdue_loans = new_loans
            self._store(customer, aggregates)
            updated += 1
        return updated

    def _normalized(self, aggregates: CustomerAggregates) -> CustomerAggregates:
        aggregates = aggregates.clamped()
        aggregates.total_lent = round_amount(aggregates.total_lent, self.currency)
        aggregates.total_profit = round_amount(aggregates.total_profit, self.currency)
        aggregates.largest_loan = round_amount(aggregates.largest_loan, self.currency)
        return aggregates

    def _store(self, customer: Customer, aggregates: CustomerAggregates) -> None:
        customer.aggregates = aggregates
        customer.updated_at = self.clock()
        self.repository.save_customer(customer)
        logger.debug(f"Aggregates stored for customer {customer.id}: {aggregates.to_dict()}")
