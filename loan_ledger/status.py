"""
Status Transition Module

Applies user-initiated installment status toggles and the explicit mark-paid
action, deriving the owning loan's status and keeping customer aggregates in
step within the same atomic unit.
"""

from datetime import datetime, date
from dataclasses import dataclass
from typing import Callable, Iterable, List, Union

from .aggregates import AggregateRecalculator, InstallmentChange
from .errors import ValidationError
from .logging_config import get_logger, log_action
from .models import Installment, InstallmentStatus, Loan, LoanStatus, utc_now
from .repository import LedgerRepository


logger = get_logger(__name__)

PAYMENT_TARGETS = (InstallmentStatus.PAID, InstallmentStatus.PENDING)


def parse_target(target: Union[str, InstallmentStatus]) -> InstallmentStatus:
    """Only Paid and Pending may be requested; Overdue is reserved for the system"""
    if isinstance(target, InstallmentStatus):
        status = target
    else:
        try:
            status = InstallmentStatus(str(target).strip().capitalize())
        except ValueError:
            status = None
    if status not in PAYMENT_TARGETS:
        raise ValidationError(
            "Installment status must be Paid or Pending",
            {"status": getattr(target, 'value', target)}
        )
    return status


def unpaid_status(due_date: date, today: date) -> InstallmentStatus:
    """Status of an installment that is not (or no longer) paid"""
    if due_date < today:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def derive_loan_status(current: LoanStatus, statuses: Iterable[InstallmentStatus]) -> LoanStatus:
    """
    Loan status implied by its installments.

    Paid is absorbing: it is only entered through mark-paid and never left
    automatically. Otherwise the loan is overdue while any installment is.
    """
    if current == LoanStatus.PAID:
        return LoanStatus.PAID
    if any(status == InstallmentStatus.OVERDUE for status in statuses):
        return LoanStatus.OVERDUE
    return LoanStatus.PENDING


def count_overdue(installments: Iterable[Installment]) -> int:
    return sum(1 for installment in installments if installment.is_overdue)


def count_paid(installments: Iterable[Installment]) -> int:
    return sum(1 for installment in installments if installment.is_paid)


@dataclass
class StatusChange:
    """Result of an installment toggle"""
    installment: Installment
    loan_status: LoanStatus
    changed: bool

    @property
    def installment_status(self) -> InstallmentStatus:
        return self.installment.status

    def to_dict(self):
        return {
            'installment': self.installment.to_dict(),
            'installment_status': self.installment_status.value,
            'loan_status': self.loan_status.value,
            'changed': self.changed,
        }


class StatusEngine:
    """
    Installment and loan status transitions
    """

    def __init__(self, repository: LedgerRepository, aggregates: AggregateRecalculator,
                 clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.aggregates = aggregates
        self.clock = clock

    def set_installment_status(self, installment_id: str,
                               target: Union[str, InstallmentStatus]) -> StatusChange:
        """
        Mark an installment Paid, or take a payment back.

        Paying an already paid installment keeps its original paid date.
        Un-paying sets Overdue when the due date is before today, Pending
        otherwise. The loan status and the customer aggregates are updated
        in the same atomic unit.

        Args:
            installment_id: Installment to change
            target: "Paid" or "Pending"

        Returns:
            StatusChange with the stored installment and resulting loan status

        Raises:
            ValidationError: If target is not Paid or Pending
            NotFoundError: If the installment does not exist
        """
        target = parse_target(target)

        with self.repository.storage.atomic():
            installment = self.repository.get_installment(installment_id)
            loan = self.repository.get_loan(installment.loan_id)
            siblings = self.repository.installments_for_loan(loan.id)

            now = self.clock()
            old_status = installment.status
            if target == InstallmentStatus.PAID:
                if old_status != InstallmentStatus.PAID:
                    installment.status = InstallmentStatus.PAID
                    installment.paid_at = now
            else:
                installment.status = unpaid_status(installment.due_date, now.date())
                installment.paid_at = None

            overdue_before = count_overdue(siblings)
            paid_before = count_paid(siblings)
            siblings = [installment if s.id == installment.id else s for s in siblings]
            overdue_after = count_overdue(siblings)
            paid_after = count_paid(siblings)

            loan_status_before = loan.status
            loan_status_after = derive_loan_status(loan.status, [s.status for s in siblings])

            change = InstallmentChange(
                loan=loan,
                old_status=old_status,
                new_status=installment.status,
                overdue_before=overdue_before,
                overdue_after=overdue_after,
                paid_before=paid_before,
                paid_after=paid_after,
                loan_status_before=loan_status_before,
                loan_status_after=loan_status_after,
            )
            if change.is_noop:
                return StatusChange(installment=installment, loan_status=loan.status, changed=False)

            installment.updated_at = now
            self.repository.save_installment(installment)
            if loan_status_after != loan_status_before:
                loan.status = loan_status_after
                loan.updated_at = now
                self.repository.save_loan(loan)
            self.aggregates.apply_installment_change(change)

        log_action(
            logger, "info",
            f"Installment {installment.id} moved from {old_status.value} to {installment.status.value}",
            action="set_installment_status",
            resource=f"installment:{installment.id}",
            extra={"loan_id": loan.id, "loan_status": loan.status.value}
        )
        return StatusChange(installment=installment, loan_status=loan.status, changed=True)

    def mark_loan_paid(self, loan_id: str) -> Loan:
        """
        Mark a loan Paid once every installment is Paid.

        Raises:
            NotFoundError: If the loan does not exist
            ValidationError: If any installment is not Paid
        """
        with self.repository.storage.atomic():
            loan = self.repository.get_loan(loan_id)
            if loan.is_paid:
                return loan

            installments = self.repository.installments_for_loan(loan.id)
            unpaid = [installment.sequence for installment in installments if not installment.is_paid]
            if unpaid:
                raise ValidationError(
                    "Loan cannot be marked paid while installments are unpaid",
                    {"loan_id": loan.id, "unpaid_sequences": unpaid}
                )

            loan.status = LoanStatus.PAID
            loan.updated_at = self.clock()
            self.repository.save_loan(loan)
            self.aggregates.refresh(loan.customer_id)

        log_action(
            logger, "info", f"Loan {loan.id} marked paid",
            action="mark_loan_paid", resource=f"loan:{loan.id}",
            extra={"customer_id": loan.customer_id}
        )
        return loan

    def refresh_loan_status(self, loan: Loan, installments: List[Installment]) -> bool:
        """Re-derive a loan's status from its installments; returns True when it changed"""
        status = derive_loan_status(loan.status, [installment.status for installment in installments])
        if status == loan.status:
            return False
        loan.status = status
        return True
