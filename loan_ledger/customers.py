"""
Customer Management Module

Manages borrower profiles. Customer names are unique; deleting a customer
removes their loans and installments with them.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional
import uuid

from .aggregates import AggregateRecalculator
from .errors import ConflictError, ValidationError
from .logging_config import get_logger, log_action
from .models import Customer, CustomerAggregates, utc_now
from .repository import LedgerRepository


logger = get_logger(__name__)


def _clean_name(name: Optional[str]) -> str:
    if name is None or not str(name).strip():
        raise ValidationError("Customer name is required", {"field": "name"})
    return str(name).strip()


class CustomerManager:
    """
    Manages customer lifecycle
    """

    def __init__(self, repository: LedgerRepository, aggregates: AggregateRecalculator,
                 clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.aggregates = aggregates
        self.clock = clock

    def create_customer(
        self,
        name: str,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        referred_by: Optional[str] = None,
        note: str = ""
    ) -> Customer:
        """
        Create a new customer

        Args:
            name: Customer name, unique across the ledger
            phone: Optional phone number
            address: Optional address
            referred_by: Optional name of whoever referred the customer
            note: Free-form note

        Returns:
            Created Customer with zeroed aggregates

        Raises:
            ValidationError: If the name is empty
            ConflictError: If a customer with the same name exists
        """
        name = _clean_name(name)
        now = self.clock()

        with self.repository.storage.atomic():
            if self.repository.find_customer_by_name(name):
                raise ConflictError(f"Customer {name} already exists", {"name": name})

            customer = Customer(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=name,
                phone=phone,
                address=address,
                referred_by=referred_by,
                note=note or "",
                aggregates=CustomerAggregates()
            )
            self.repository.save_customer(customer)

        log_action(
            logger, "info", f"Customer {customer.id} created",
            action="create_customer", resource=f"customer:{customer.id}",
            extra={"name": customer.name}
        )
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        """Get customer by ID, raising NotFoundError when missing"""
        return self.repository.get_customer(customer_id)

    def list_customers(self) -> List[Customer]:
        return self.repository.all_customers()

    def update_customer(
        self,
        customer_id: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        referred_by: Optional[str] = None,
        note: Optional[str] = None
    ) -> Customer:
        """Update customer information; fields left as None are unchanged"""
        with self.repository.storage.atomic():
            customer = self.repository.get_customer(customer_id)

            if name is not None:
                name = _clean_name(name)
                if name != customer.name:
                    existing = self.repository.find_customer_by_name(name)
                    if existing and existing.id != customer.id:
                        raise ConflictError(f"Customer {name} already exists", {"name": name})
                customer.name = name
            if phone is not None:
                customer.phone = phone
            if address is not None:
                customer.address = address
            if referred_by is not None:
                customer.referred_by = referred_by
            if note is not None:
                customer.note = note

            customer.updated_at = self.clock()
            self.repository.save_customer(customer)

        log_action(
            logger, "info", f"Customer {customer.id} updated",
            action="update_customer", resource=f"customer:{customer.id}"
        )
        return customer

    def update_customer_note(self, customer_id: str, note: str) -> Customer:
        return self.update_customer(customer_id, note=note or "")

    def delete_customer(self, customer_id: str) -> Dict[str, int]:
        """
        Delete a customer together with their loans and installments.

        Returns:
            Counts of deleted loans and installments
        """
        deleted_loans = 0
        deleted_installments = 0

        with self.repository.storage.atomic():
            self.repository.get_customer(customer_id)
            for loan in self.repository.loans_for_customer(customer_id):
                for installment in self.repository.installments_for_loan(loan.id):
                    self.repository.delete_installment(installment.id)
                    deleted_installments += 1
                self.repository.delete_loan(loan.id)
                deleted_loans += 1
            self.repository.delete_customer(customer_id)

        log_action(
            logger, "info", f"Customer {customer_id} deleted",
            action="delete_customer", resource=f"customer:{customer_id}",
            extra={"loans": deleted_loans, "installments": deleted_installments}
        )
        return {"loans": deleted_loans, "installments": deleted_installments}

    def get_aggregates(self, customer_id: str) -> CustomerAggregates:
        """Live recomputation of a customer's aggregates"""
        return self.aggregates.compute(customer_id)
