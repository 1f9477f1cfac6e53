"""
Loan Management Module

Creates, edits and deletes loans together with their installment schedules,
keeping the owning customers' aggregates consistent in the same atomic unit.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import uuid

from .aggregates import AggregateRecalculator
from .currency import Currency, DEFAULT_CURRENCY, round_amount
from .errors import ValidationError
from .logging_config import get_logger, log_action
from .models import Installment, InstallmentStatus, Loan, LoanStatus, utc_now
from .repository import LedgerRepository
from .schedule import (
    generate_schedule, installment_amount, plan_resize, to_date, validate_terms
)
from .status import StatusEngine


logger = get_logger(__name__)

EDITABLE_FIELDS = frozenset([
    "customer_id", "principal", "repayable", "installment_count", "origination_date", "note"
])


class LoanManager:
    """
    Manages loan lifecycle and installment schedules
    """

    def __init__(
        self,
        repository: LedgerRepository,
        aggregates: AggregateRecalculator,
        status_engine: StatusEngine,
        clock: Callable[[], datetime] = utc_now,
        currency: Currency = DEFAULT_CURRENCY
    ):
        self.repository = repository
        self.aggregates = aggregates
        self.status_engine = status_engine
        self.clock = clock
        self.currency = currency

    def create_loan(
        self,
        customer_id: str,
        principal: Any,
        repayable: Any,
        installment_count: Any,
        origination_date: Any,
        note: str = ""
    ) -> Loan:
        """
        Create a loan and its installment schedule

        Args:
            customer_id: Borrowing customer
            principal: Amount lent
            repayable: Total to be repaid, not lower than principal
            installment_count: Number of monthly installments
            origination_date: Date the loan was issued
            note: Free-form note

        Returns:
            Created Loan

        Raises:
            ValidationError: If the terms are invalid
            NotFoundError: If the customer does not exist
        """
        principal, repayable, count = validate_terms(principal, repayable, installment_count)
        principal = round_amount(principal, self.currency)
        repayable = round_amount(repayable, self.currency)
        origination = to_date(origination_date, "origination_date")
        now = self.clock()

        with self.repository.storage.atomic():
            self.repository.get_customer(customer_id)

            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_id=customer_id,
                principal=principal,
                repayable=repayable,
                installment_count=count,
                origination_date=origination,
                note=note or ""
            )
            schedule = generate_schedule(
                principal, repayable, count, origination,
                today=now.date(), now=now, loan_id=loan.id, currency=self.currency
            )
            self.status_engine.refresh_loan_status(loan, schedule)

            self.repository.save_loan(loan)
            self.repository.save_installments(schedule)
            self.aggregates.refresh(customer_id)

        log_action(
            logger, "info", f"Loan {loan.id} created with {count} installments",
            action="create_loan", resource=f"loan:{loan.id}",
            extra={"customer_id": customer_id, "principal": str(principal), "repayable": str(repayable)}
        )
        return loan

    def edit_loan(self, loan_id: str, **changes: Any) -> Loan:
        """
        Edit loan fields, resizing the schedule when the count changes.

        Shrinking removes the trailing installments, whatever their status.
        Growing appends installments after the current last sequence, dated
        from the (possibly new) origination date. Every installment's amount
        is then recomputed from the new terms. Existing due dates are kept.

        Raises:
            ValidationError: If a field is unknown or the new terms are invalid
            NotFoundError: If the loan or the new customer does not exist
        """
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError("Unknown loan fields", {"fields": unknown})

        with self.repository.storage.atomic():
            loan = self.repository.get_loan(loan_id)

            customer_id = changes.get("customer_id") or loan.customer_id
            self.repository.get_customer(customer_id)
            principal, repayable, count = validate_terms(
                changes.get("principal", loan.principal),
                changes.get("repayable", loan.repayable),
                changes.get("installment_count", loan.installment_count)
            )
            principal = round_amount(principal, self.currency)
            repayable = round_amount(repayable, self.currency)
            origination = to_date(changes.get("origination_date", loan.origination_date), "origination_date")
            note = changes.get("note")

            now = self.clock()
            previous_customer_id = loan.customer_id
            installments = self.repository.installments_for_loan(loan.id)

            plan = plan_resize(installments, count)
            for installment in plan.remove:
                self.repository.delete_installment(installment.id)
            removed = {installment.id for installment in plan.remove}
            kept = [installment for installment in installments if installment.id not in removed]

            appended: List[Installment] = []
            if plan.new_count > plan.old_count:
                appended = generate_schedule(
                    principal, repayable, count, origination,
                    today=now.date(), now=now, loan_id=loan.id,
                    start_sequence=plan.old_count + 1, currency=self.currency
                )

            amount = installment_amount(repayable, count, self.currency)
            for installment in kept:
                if installment.amount != amount:
                    installment.amount = amount
                    installment.updated_at = now
                    self.repository.save_installment(installment)
            self.repository.save_installments(appended)

            loan.customer_id = customer_id
            loan.principal = principal
            loan.repayable = repayable
            loan.installment_count = count
            loan.origination_date = origination
            if note is not None:
                loan.note = note
            self.status_engine.refresh_loan_status(loan, kept + appended)
            loan.updated_at = now
            self.repository.save_loan(loan)

            for affected in {previous_customer_id, customer_id}:
                self.aggregates.refresh(affected)

        log_action(
            logger, "info", f"Loan {loan.id} edited",
            action="edit_loan", resource=f"loan:{loan.id}",
            extra={
                "fields": sorted(changes),
                "removed_installments": len(plan.remove),
                "appended_installments": len(appended),
            }
        )
        return loan

    def delete_loan(self, loan_id: str) -> None:
        """
        Delete a loan and its installments, subtracting its contribution
        from the customer's aggregates.
        """
        with self.repository.storage.atomic():
            loan = self.repository.get_loan(loan_id)
            installments = self.repository.installments_for_loan(loan.id)

            self.aggregates.remove_loan(loan, installments)
            for installment in installments:
                self.repository.delete_installment(installment.id)
            self.repository.delete_loan(loan.id)

        log_action(
            logger, "info", f"Loan {loan_id} deleted",
            action="delete_loan", resource=f"loan:{loan_id}",
            extra={"customer_id": loan.customer_id, "installments": len(installments)}
        )

    def get_loan(self, loan_id: str) -> Loan:
        return self.repository.get_loan(loan_id)

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of an existing loan, ordered by sequence"""
        self.repository.get_loan(loan_id)
        return self.repository.installments_for_loan(loan_id)

    def list_open_loans(self) -> List[Loan]:
        """Loans that are not Paid (Pending or overdue)"""
        return [loan for loan in self.repository.all_loans() if not loan.is_paid]

    def list_paid_loans(self) -> List[Loan]:
        return [loan for loan in self.repository.all_loans() if loan.status == LoanStatus.PAID]

    def list_installments(self, loan_id: Optional[str] = None,
                          customer_id: Optional[str] = None) -> List[Installment]:
        """
        Installments filtered by loan and/or customer, ordered by due date
        then sequence.
        """
        if loan_id:
            loans = [self.repository.get_loan(loan_id)]
            if customer_id and loans[0].customer_id != customer_id:
                return []
        elif customer_id:
            self.repository.get_customer(customer_id)
            loans = self.repository.loans_for_customer(customer_id)
        else:
            loans = self.repository.all_loans()

        installments: List[Installment] = []
        for loan in loans:
            installments.extend(self.repository.installments_for_loan(loan.id))
        installments.sort(key=lambda i: (i.due_date, i.sequence))
        return installments

    def list_overdue_installments(self) -> List[Dict[str, Any]]:
        """
        Overdue installments with the loan and customer they belong to,
        oldest due date first.
        """
        loans = {loan.id: loan for loan in self.repository.all_loans()}
        customers = {customer.id: customer for customer in self.repository.all_customers()}

        rows = []
        for installment in self.repository.installments_with_status(InstallmentStatus.OVERDUE):
            loan = loans.get(installment.loan_id)
            if loan is None:
                continue
            customer = customers.get(loan.customer_id)
            rows.append({
                "installment": installment,
                "loan": loan,
                "customer_name": customer.name if customer else None,
            })
        rows.sort(key=lambda row: (row["installment"].due_date, row["installment"].sequence))
        return rows
