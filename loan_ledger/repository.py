"""
Ledger Repository Module

Typed access to the customer, loan and installment tables on top of a
StorageInterface. Components share one repository so the table names and the
record conversions live in a single place.
"""

from typing import Iterable, List, Optional

from .errors import NotFoundError
from .models import Customer, Loan, Installment, InstallmentStatus
from .storage import StorageInterface


class LedgerRepository:
    """Load, save and delete ledger records"""

    customers_table = "customers"
    loans_table = "loans"
    installments_table = "installments"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    # Customers

    def find_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.customers_table, customer_id)
        return Customer.from_dict(data) if data else None

    def get_customer(self, customer_id: str) -> Customer:
        """Load a customer or raise NotFoundError"""
        customer = self.find_customer(customer_id)
        if not customer:
            raise NotFoundError("customer", customer_id)
        return customer

    def find_customer_by_name(self, name: str) -> Optional[Customer]:
        rows = self.storage.find(self.customers_table, {"name": name})
        return Customer.from_dict(rows[0]) if rows else None

    def all_customers(self) -> List[Customer]:
        customers = [Customer.from_dict(data) for data in self.storage.load_all(self.customers_table)]
        customers.sort(key=lambda c: c.name.lower())
        return customers

    def save_customer(self, customer: Customer) -> None:
        self.storage.save(self.customers_table, customer.id, customer.to_dict())

    def delete_customer(self, customer_id: str) -> bool:
        return self.storage.delete(self.customers_table, customer_id)

    # Loans

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def get_loan(self, loan_id: str) -> Loan:
        """Load a loan or raise NotFoundError"""
        loan = self.find_loan(loan_id)
        if not loan:
            raise NotFoundError("loan", loan_id)
        return loan

    def loans_for_customer(self, customer_id: str) -> List[Loan]:
        rows = self.storage.find(self.loans_table, {"customer_id": customer_id})
        return [Loan.from_dict(data) for data in rows]

    def all_loans(self) -> List[Loan]:
        return [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def delete_loan(self, loan_id: str) -> bool:
        return self.storage.delete(self.loans_table, loan_id)

    # Installments

    def find_installment(self, installment_id: str) -> Optional[Installment]:
        data = self.storage.load(self.installments_table, installment_id)
        return Installment.from_dict(data) if data else None

    def get_installment(self, installment_id: str) -> Installment:
        """Load an installment or raise NotFoundError"""
        installment = self.find_installment(installment_id)
        if not installment:
            raise NotFoundError("installment", installment_id)
        return installment

    def installments_for_loan(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by sequence number"""
        rows = self.storage.find(self.installments_table, {"loan_id": loan_id})
        installments = [Installment.from_dict(data) for data in rows]
        installments.sort(key=lambda i: i.sequence)
        return installments

    def installments_with_status(self, status: InstallmentStatus) -> List[Installment]:
        rows = self.storage.find(self.installments_table, {"status": status.value})
        return [Installment.from_dict(data) for data in rows]

    def save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def save_installments(self, installments: Iterable[Installment]) -> None:
        for installment in installments:
            self.save_installment(installment)

    def delete_installment(self, installment_id: str) -> bool:
        return self.storage.delete(self.installments_table, installment_id)
