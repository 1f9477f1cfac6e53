"""
Test suite for the overdue sweep and its daily scheduler
"""

import pytest
import threading
from datetime import date, datetime, timezone

from loan_ledger.errors import StoreError
from loan_ledger.models import InstallmentStatus, LoanStatus
from loan_ledger.sweeper import DailySweepScheduler, next_run_after


class TestOverdueSweep:
    """Batch promotion of past-due installments"""

    @pytest.fixture
    def loan(self, ledger, customer):
        return ledger.create_loan(customer.id, "1000", "1200", 4, "2024-01-01")

    def test_worked_example(self, ledger, customer, loan, clock):
        """On 2024-06-01 every installment of the 2024-01-01 loan is past due"""
        clock.set_date(date(2024, 6, 1))

        result = ledger.run_overdue_sweep()

        assert result.ran
        assert result.installments_marked == 4
        assert result.loans_marked == 1
        assert result.customers_updated == 1
        assert all(i.status == InstallmentStatus.OVERDUE for i in ledger.get_installments(loan.id))
        assert ledger.get_loan(loan.id).status == LoanStatus.OVERDUE
        aggregates = ledger.get_customer(customer.id).aggregates
        assert aggregates.overdue_installments == 4
        assert aggregates.overdue_loans == 1

    def test_idempotent(self, ledger, customer, loan, clock):
        clock.set_date(date(2024, 3, 15))
        ledger.run_overdue_sweep()
        installments = [i.to_dict() for i in ledger.get_installments(loan.id)]
        aggregates = ledger.get_customer(customer.id).aggregates

        second = ledger.run_overdue_sweep()

        assert second.ran
        assert second.installments_marked == 0
        assert second.loans_marked == 0
        assert second.customers_updated == 0
        assert [i.to_dict() for i in ledger.get_installments(loan.id)] == installments
        assert ledger.get_customer(customer.id).aggregates == aggregates

    def test_due_today_not_swept(self, ledger, loan, clock):
        clock.set_date(date(2024, 2, 1), hour=23)
        result = ledger.run_overdue_sweep()
        assert result.installments_marked == 0
        assert ledger.get_loan(loan.id).status == LoanStatus.PENDING

    def test_paid_installments_untouched(self, ledger, customer, loan, clock):
        first = ledger.get_installments(loan.id)[0]
        ledger.set_installment_status(first.id, "Paid")

        clock.set_date(date(2024, 3, 2))
        result = ledger.run_overdue_sweep()

        assert result.installments_marked == 1
        statuses = [i.status for i in ledger.get_installments(loan.id)]
        assert statuses[:2] == [InstallmentStatus.PAID, InstallmentStatus.OVERDUE]
        assert ledger.get_customer(customer.id).aggregates == ledger.get_customer_aggregates(customer.id)

    def test_reads_sweep_first(self, ledger, loan, clock):
        clock.set_date(date(2024, 6, 1))
        overdue = ledger.list_overdue_installments()
        assert len(overdue) == 4
        assert overdue[0]["customer_name"] == "Maria Silva"
        assert [row["installment"].sequence for row in overdue] == [1, 2, 3, 4]

    def test_reads_without_sweep(self, ledger, loan, clock):
        ledger.sweep_before_reads = False
        clock.set_date(date(2024, 6, 1))
        assert ledger.list_overdue_installments() == []

    def test_concurrent_call_is_noop(self, ledger, loan, clock):
        clock.set_date(date(2024, 6, 1))
        ledger.sweeper._guard.acquire()
        try:
            assert ledger.sweeper.running
            result = ledger.run_overdue_sweep()
        finally:
            ledger.sweeper._guard.release()

        assert not result.ran
        assert all(i.status == InstallmentStatus.PENDING for i in ledger.get_installments(loan.id))

    def test_guard_released_after_failure(self, ledger, loan, clock, monkeypatch):
        clock.set_date(date(2024, 6, 1))

        def failing(*args, **kwargs):
            raise StoreError("disk unavailable")

        monkeypatch.setattr(ledger.aggregates, "refresh_delinquency", failing)
        with pytest.raises(StoreError):
            ledger.run_overdue_sweep()

        assert not ledger.sweeper.running
        # Steps before the failure stay committed
        assert ledger.get_loan(loan.id).status == LoanStatus.OVERDUE

        monkeypatch.undo()
        result = ledger.run_overdue_sweep()
        assert result.ran
        assert result.customers_updated == 1

    def test_failing_step_aborts_remaining(self, ledger, loan, clock, monkeypatch):
        clock.set_date(date(2024, 6, 1))

        def failing(*args, **kwargs):
            raise StoreError("disk unavailable")

        monkeypatch.setattr(ledger.sweeper, "_mark_loans", failing)
        with pytest.raises(StoreError):
            ledger.run_overdue_sweep()

        assert all(i.status == InstallmentStatus.OVERDUE for i in ledger.get_installments(loan.id))
        assert ledger.get_loan(loan.id).status == LoanStatus.PENDING

    def test_threads_never_overlap(self, ledger, customer, clock):
        for n in range(5):
            ledger.create_loan(customer.id, "100", "120", 12, "2024-01-01")
        clock.set_date(date(2024, 6, 1))

        results = []
        threads = [threading.Thread(target=lambda: results.append(ledger.run_overdue_sweep())) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        ran = [r for r in results if r.ran]
        assert sum(r.installments_marked for r in ran) == 20  # Feb to May for each loan
        assert ledger.get_customer(customer.id).aggregates == ledger.get_customer_aggregates(customer.id)


class TestDailySweepScheduler:
    """Background daily trigger"""

    def test_next_run_same_day(self):
        now = datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc)
        assert next_run_after(now, 0, 1) == datetime(2024, 1, 1, 0, 1, tzinfo=timezone.utc)

    def test_next_run_next_day(self):
        now = datetime(2024, 1, 31, 0, 1, tzinfo=timezone.utc)
        assert next_run_after(now, 0, 1) == datetime(2024, 2, 1, 0, 1, tzinfo=timezone.utc)

    def test_start_and_stop(self, ledger):
        scheduler = DailySweepScheduler(ledger.sweeper, 0, 1, ledger.clock)
        scheduler.start()
        assert scheduler.is_running
        scheduler.stop(timeout=2.0)
        assert not scheduler.is_running

    def test_run_once_logs_failures(self, ledger, monkeypatch, caplog):
        def failing():
            raise StoreError("disk unavailable")

        monkeypatch.setattr(ledger.sweeper, "run", failing)
        scheduler = DailySweepScheduler(ledger.sweeper)
        scheduler.run_once()

        assert "Scheduled overdue sweep failed" in caplog.text
