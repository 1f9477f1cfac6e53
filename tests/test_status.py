"""
Test suite for installment and loan status transitions
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_ledger.errors import NotFoundError, ValidationError
from loan_ledger.models import InstallmentStatus, LoanStatus
from loan_ledger.status import derive_loan_status, parse_target, unpaid_status


class TestStatusRules:
    """Pure status derivation"""

    def test_parse_target(self):
        assert parse_target("Paid") == InstallmentStatus.PAID
        assert parse_target("pending") == InstallmentStatus.PENDING
        assert parse_target(InstallmentStatus.PAID) == InstallmentStatus.PAID

    @pytest.mark.parametrize("target", ["Overdue", InstallmentStatus.OVERDUE, "Settled", "", None, 3])
    def test_parse_target_rejects(self, target):
        with pytest.raises(ValidationError):
            parse_target(target)

    def test_unpaid_status_is_date_only(self):
        assert unpaid_status(date(2024, 2, 1), date(2024, 2, 1)) == InstallmentStatus.PENDING
        assert unpaid_status(date(2024, 2, 1), date(2024, 2, 2)) == InstallmentStatus.OVERDUE
        assert unpaid_status(date(2024, 2, 1), date(2024, 1, 31)) == InstallmentStatus.PENDING

    def test_derive_loan_status(self):
        pending, overdue, paid = InstallmentStatus.PENDING, InstallmentStatus.OVERDUE, InstallmentStatus.PAID
        assert derive_loan_status(LoanStatus.PENDING, [pending, paid]) == LoanStatus.PENDING
        assert derive_loan_status(LoanStatus.PENDING, [pending, overdue]) == LoanStatus.OVERDUE
        assert derive_loan_status(LoanStatus.OVERDUE, [paid, paid]) == LoanStatus.PENDING
        assert derive_loan_status(LoanStatus.PAID, [overdue]) == LoanStatus.PAID


class TestSetInstallmentStatus:
    """Toggling installments through the ledger"""

    @pytest.fixture
    def loan(self, ledger, customer):
        return ledger.create_loan(customer.id, "1000", "1200", 4, "2024-01-01")

    def test_pay_first_installment(self, ledger, customer, loan, clock):
        """Paying #1 stamps the paid date, keeps the loan Pending and books 50.00 profit"""
        first = ledger.get_installments(loan.id)[0]

        change = ledger.set_installment_status(first.id, "Paid")

        assert change.changed
        assert change.installment_status == InstallmentStatus.PAID
        assert change.loan_status == LoanStatus.PENDING
        stored = ledger.get_installments(loan.id)[0]
        assert stored.status == InstallmentStatus.PAID
        assert stored.paid_at == clock()
        assert ledger.get_customer(customer.id).aggregates.total_profit == Decimal("50.00")

    def test_paying_twice_keeps_paid_date(self, ledger, customer, loan, clock):
        first = ledger.get_installments(loan.id)[0]
        ledger.set_installment_status(first.id, "Paid")
        paid_at = clock()

        clock.advance(days=3)
        change = ledger.set_installment_status(first.id, "Paid")

        assert not change.changed
        assert ledger.get_installments(loan.id)[0].paid_at == paid_at
        assert ledger.get_customer(customer.id).aggregates.total_profit == Decimal("50.00")

    def test_unpay_past_due_becomes_overdue(self, ledger, customer, loan, clock):
        first = ledger.get_installments(loan.id)[0]
        ledger.set_installment_status(first.id, "Paid")

        clock.set_date(date(2024, 2, 10))
        change = ledger.set_installment_status(first.id, "Pending")

        assert change.installment_status == InstallmentStatus.OVERDUE
        assert change.loan_status == LoanStatus.OVERDUE
        assert change.installment.paid_at is None
        aggregates = ledger.get_customer(customer.id).aggregates
        assert aggregates.total_profit == Decimal("0.00")
        assert aggregates.overdue_installments == 1
        assert aggregates.overdue_loans == 1
        assert ledger.get_loan(loan.id).status == LoanStatus.OVERDUE

    def test_unpay_due_today_is_pending(self, ledger, loan, clock):
        first = ledger.get_installments(loan.id)[0]
        ledger.set_installment_status(first.id, "Paid")

        clock.set_date(date(2024, 2, 1), hour=23)
        change = ledger.set_installment_status(first.id, "Pending")

        assert change.installment_status == InstallmentStatus.PENDING
        assert change.loan_status == LoanStatus.PENDING

    def test_paying_last_overdue_clears_loan(self, ledger, customer, loan, clock):
        clock.set_date(date(2024, 2, 10))
        ledger.run_overdue_sweep()
        assert ledger.get_loan(loan.id).status == LoanStatus.OVERDUE

        first = ledger.get_installments(loan.id)[0]
        change = ledger.set_installment_status(first.id, "Paid")

        assert change.loan_status == LoanStatus.PENDING
        aggregates = ledger.get_customer(customer.id).aggregates
        assert aggregates.overdue_installments == 0
        assert aggregates.overdue_loans == 0

    def test_invalid_target_changes_nothing(self, ledger, customer, loan):
        first = ledger.get_installments(loan.id)[0]
        before = ledger.get_customer(customer.id).aggregates

        with pytest.raises(ValidationError):
            ledger.set_installment_status(first.id, "Overdue")

        assert ledger.get_installments(loan.id)[0].status == InstallmentStatus.PENDING
        assert ledger.get_customer(customer.id).aggregates == before

    def test_unknown_installment(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.set_installment_status("missing", "Paid")


class TestMarkLoanPaid:
    """Explicit mark-paid action"""

    @pytest.fixture
    def loan(self, ledger, customer):
        return ledger.create_loan(customer.id, "1000", "1200", 4, "2024-01-01")

    def test_rejected_while_installments_unpaid(self, ledger, loan):
        ledger.set_installment_status(ledger.get_installments(loan.id)[0].id, "Paid")

        with pytest.raises(ValidationError) as exc_info:
            ledger.mark_loan_paid(loan.id)

        assert exc_info.value.details["unpaid_sequences"] == [2, 3, 4]
        assert ledger.get_loan(loan.id).status == LoanStatus.PENDING

    def test_marks_paid_when_all_paid(self, ledger, customer, loan):
        for installment in ledger.get_installments(loan.id):
            ledger.set_installment_status(installment.id, "Paid")

        paid = ledger.mark_loan_paid(loan.id)

        assert paid.status == LoanStatus.PAID
        aggregates = ledger.get_customer(customer.id).aggregates
        assert aggregates.paid_loans == 1
        assert aggregates.open_loans == 0
        assert aggregates.total_profit == Decimal("200.00")
        assert [l.id for l in ledger.list_paid_loans()] == [loan.id]
        assert ledger.list_open_loans() == []

    def test_paid_is_absorbing(self, ledger, customer, loan, clock):
        for installment in ledger.get_installments(loan.id):
            ledger.set_installment_status(installment.id, "Paid")
        ledger.mark_loan_paid(loan.id)

        clock.set_date(date(2024, 12, 1))
        first = ledger.get_installments(loan.id)[0]
        change = ledger.set_installment_status(first.id, "Pending")

        assert change.installment_status == InstallmentStatus.OVERDUE
        assert change.loan_status == LoanStatus.PAID
        ledger.run_overdue_sweep()
        assert ledger.get_loan(loan.id).status == LoanStatus.PAID
        assert ledger.get_customer(customer.id).aggregates == ledger.get_customer_aggregates(customer.id)

    def test_unknown_loan(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.mark_loan_paid("missing")
