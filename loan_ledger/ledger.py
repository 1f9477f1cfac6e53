"""
Loan Ledger Module

LoanLedger wires storage, the schedule generator, the status engine, the
aggregate recalculator and the overdue sweeper together and exposes the
ledger operations to callers such as the HTTP adapter.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .aggregates import AggregateRecalculator
from .config import LedgerConfig, get_config
from .currency import get_currency
from .customers import CustomerManager
from .logging_config import get_logger
from .loans import LoanManager
from .models import Customer, CustomerAggregates, Installment, Loan, utc_now
from .repository import LedgerRepository
from .schedule import generate_schedule
from .status import StatusChange, StatusEngine
from .storage import StorageInterface, create_storage
from .sweeper import DailySweepScheduler, OverdueSweeper, SweepResult


logger = get_logger(__name__)


class LoanLedger:
    """
    Entry point for all ledger operations
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.currency = get_currency(self.config.currency)
        self.clock = clock or utc_now
        self.sweep_before_reads = self.config.sweep_before_reads

        self.repository = LedgerRepository(self.storage)
        self.aggregates = AggregateRecalculator(self.repository, self.currency, self.clock)
        self.status_engine = StatusEngine(self.repository, self.aggregates, self.clock)
        self.sweeper = OverdueSweeper(self.repository, self.aggregates, self.clock)
        self.customers = CustomerManager(self.repository, self.aggregates, self.clock)
        self.loans = LoanManager(
            self.repository, self.aggregates, self.status_engine, self.clock, self.currency
        )
        self.scheduler = DailySweepScheduler(
            self.sweeper, self.config.sweep_hour, self.config.sweep_minute, self.clock
        )

    # Schedule

    def generate_schedule(self, principal: Any, repayable: Any, count: Any,
                          origination_date: Any) -> List[Installment]:
        """Preview a schedule without storing it"""
        now = self.clock()
        return generate_schedule(
            principal, repayable, count, origination_date,
            today=now.date(), now=now, currency=self.currency
        )

    # Customers

    def create_customer(self, name: str, phone: Optional[str] = None, address: Optional[str] = None,
                        referred_by: Optional[str] = None, note: str = "") -> Customer:
        return self.customers.create_customer(name, phone, address, referred_by, note)

    def update_customer(self, customer_id: str, **fields: Any) -> Customer:
        return self.customers.update_customer(customer_id, **fields)

    def update_customer_note(self, customer_id: str, note: str) -> Customer:
        return self.customers.update_customer_note(customer_id, note)

    def delete_customer(self, customer_id: str) -> Dict[str, int]:
        return self.customers.delete_customer(customer_id)

    def get_customer(self, customer_id: str) -> Customer:
        return self.customers.get_customer(customer_id)

    def list_customers(self) -> List[Customer]:
        return self.customers.list_customers()

    def get_customer_aggregates(self, customer_id: str) -> CustomerAggregates:
        """Live recomputation from current loans and installments"""
        return self.customers.get_aggregates(customer_id)

    # Loans

    def create_loan(self, customer_id: str, principal: Any, repayable: Any, installment_count: Any,
                    origination_date: Any, note: str = "") -> Loan:
        return self.loans.create_loan(customer_id, principal, repayable, installment_count,
                                      origination_date, note)

    def edit_loan(self, loan_id: str, **fields: Any) -> Loan:
        return self.loans.edit_loan(loan_id, **fields)

    def delete_loan(self, loan_id: str) -> None:
        self.loans.delete_loan(loan_id)

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.get_loan(loan_id)

    def get_installments(self, loan_id: str) -> List[Installment]:
        return self.loans.get_installments(loan_id)

    def list_open_loans(self) -> List[Loan]:
        self._sweep_before_read()
        return self.loans.list_open_loans()

    def list_paid_loans(self) -> List[Loan]:
        return self.loans.list_paid_loans()

    def list_installments(self, loan_id: Optional[str] = None,
                          customer_id: Optional[str] = None) -> List[Installment]:
        self._sweep_before_read()
        return self.loans.list_installments(loan_id=loan_id, customer_id=customer_id)

    def list_overdue_installments(self) -> List[Dict[str, Any]]:
        self._sweep_before_read()
        return self.loans.list_overdue_installments()

    # Status

    def set_installment_status(self, installment_id: str, target: Any) -> StatusChange:
        return self.status_engine.set_installment_status(installment_id, target)

    def mark_loan_paid(self, loan_id: str) -> Loan:
        return self.status_engine.mark_loan_paid(loan_id)

    # Overdue sweep

    def run_overdue_sweep(self) -> SweepResult:
        return self.sweeper.run()

    def _sweep_before_read(self) -> None:
        if self.sweep_before_reads:
            self.sweeper.run()

    # Lifecycle

    def start_scheduler(self) -> None:
        if self.config.sweep_enabled:
            self.scheduler.start()
        else:
            logger.info("Overdue sweep scheduler disabled by configuration")

    def shutdown(self) -> None:
        """Stop the scheduler and release the storage backend"""
        self.scheduler.stop()
        self.storage.close()
