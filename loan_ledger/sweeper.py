"""
Overdue Sweep Module

Promotes past-due installments to Overdue, flags their loans and refreshes the
customers' delinquency counters. The sweep is idempotent and guarded against
concurrent runs: a second caller returns immediately without doing anything.

DailySweepScheduler runs the sweep once a day from a background thread.
"""

import threading
from datetime import datetime, timedelta, date
from dataclasses import dataclass, asdict
from typing import Callable, Optional, Set

from .aggregates import AggregateRecalculator
from .errors import LedgerError
from .logging_config import get_logger, log_action
from .models import InstallmentStatus, LoanStatus, utc_now
from .repository import LedgerRepository


logger = get_logger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweep invocation"""
    ran: bool
    installments_marked: int = 0
    loans_marked: int = 0
    customers_updated: int = 0
    sweep_date: Optional[date] = None

    def to_dict(self):
        result = asdict(self)
        result['sweep_date'] = self.sweep_date.isoformat() if self.sweep_date else None
        return result


class OverdueSweeper:
    """
    Batch promotion of past-due installments and loans
    """

    def __init__(self, repository: LedgerRepository, aggregates: AggregateRecalculator,
                 clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.aggregates = aggregates
        self.clock = clock
        self._guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._guard.locked()

    def run(self) -> SweepResult:
        """
        Run the sweep unless one is already in progress.

        The three steps each commit on their own; when one fails the
        remaining steps are skipped and the error is raised to the caller.

        Returns:
            SweepResult, with ran=False when another sweep held the guard
        """
        if not self._guard.acquire(blocking=False):
            logger.debug("Overdue sweep already running, skipping")
            return SweepResult(ran=False)

        try:
            return self._sweep()
        finally:
            self._guard.release()

    def _sweep(self) -> SweepResult:
        today = self.clock().date()
        result = SweepResult(ran=True, sweep_date=today)
        storage = self.repository.storage

        try:
            with storage.atomic():
                result.installments_marked = self._mark_installments(today)
            with storage.atomic():
                result.loans_marked = self._mark_loans()
            with storage.atomic():
                result.customers_updated = self.aggregates.refresh_delinquency()
        except LedgerError:
            logger.exception(f"Overdue sweep for {today.isoformat()} failed")
            raise

        log_action(
            logger, "info", f"Overdue sweep for {today.isoformat()} completed",
            action="overdue_sweep", resource="ledger", extra=result.to_dict()
        )
        return result

    def _mark_installments(self, today: date) -> int:
        now = self.clock()
        marked = 0
        for installment in self.repository.installments_with_status(InstallmentStatus.PENDING):
            if installment.due_date < today:
                installment.status = InstallmentStatus.OVERDUE
                installment.updated_at = now
                self.repository.save_installment(installment)
                marked += 1
        return marked

    def _mark_loans(self) -> int:
        now = self.clock()
        loan_ids: Set[str] = {
            installment.loan_id
            for installment in self.repository.installments_with_status(InstallmentStatus.OVERDUE)
        }
        marked = 0
        for loan_id in loan_ids:
            loan = self.repository.find_loan(loan_id)
            # Paid loans stay Paid
            if loan is None or loan.status != LoanStatus.PENDING:
                continue
            loan.status = LoanStatus.OVERDUE
            loan.updated_at = now
            self.repository.save_loan(loan)
            marked += 1
        return marked


def next_run_after(now: datetime, hour: int, minute: int) -> datetime:
    """Next occurrence of hour:minute strictly after now, in now's timezone"""
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class DailySweepScheduler:
    """Runs the overdue sweep every day at a fixed time"""

    def __init__(self, sweeper: OverdueSweeper, hour: int = 0, minute: int = 1,
                 clock: Callable[[], datetime] = utc_now):
        self.sweeper = sweeper
        self.hour = hour
        self.minute = minute
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="overdue-sweep-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Overdue sweep scheduled daily at {self.hour:02d}:{self.minute:02d}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Overdue sweep scheduler stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            now = self.clock()
            delay = (next_run_after(now, self.hour, self.minute) - now).total_seconds()
            if self._stop_event.wait(max(delay, 0)):
                break
            self.run_once()

    def run_once(self) -> None:
        """Run one scheduled sweep, logging failures so the schedule keeps going"""
        try:
            self.sweeper.run()
        except Exception:
            logger.exception("Scheduled overdue sweep failed")
