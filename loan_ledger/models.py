"""
Ledger Records Module

Customer, Loan and Installment records plus the derived customer aggregates.
Records convert to and from plain dictionaries for the storage backends;
Decimal amounts are stored as strings, dates as ISO strings.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional
from enum import Enum

from .currency import ZERO
from .storage import StorageRecord


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "Pending"    # Not yet due, or due today
    OVERDUE = "Overdue"    # Due date passed without payment
    PAID = "Paid"          # Paid, paid_at is set


class LoanStatus(Enum):
    """Loan states; Paid is only reached through the explicit mark-paid action"""
    PENDING = "Pending"
    OVERDUE = "OverdueStatus"
    PAID = "Paid"


def utc_now() -> datetime:
    """Default clock for ledger components"""
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass
class CustomerAggregates:
    """Derived per-customer rollups, maintained by the aggregate recalculator"""
    total_loans: int = 0
    open_loans: int = 0
    paid_loans: int = 0
    overdue_loans: int = 0
    total_lent: Decimal = ZERO
    total_profit: Decimal = ZERO
    overdue_installments: int = 0
    largest_loan: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = str(value) if isinstance(value, Decimal) else value
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CustomerAggregates':
        if not data:
            return cls()
        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            kwargs[f.name] = Decimal(value) if isinstance(f.default, Decimal) else int(value)
        return cls(**kwargs)

    def clamped(self) -> 'CustomerAggregates':
        """Copy with every field floored at zero"""
        values = {}
        for f in fields(self):
            value = getattr(self, f.name)
            values[f.name] = max(value, type(value)(0))
        return CustomerAggregates(**values)


@dataclass
class Customer(StorageRecord):
    """Borrower profile with its derived aggregates"""
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    referred_by: Optional[str] = None
    note: str = ""
    aggregates: CustomerAggregates = field(default_factory=CustomerAggregates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'name': self.name,
            'phone': self.phone,
            'address': self.address,
            'referred_by': self.referred_by,
            'note': self.note,
            'aggregates': self.aggregates.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        return cls(
            id=data['id'],
            created_at=_parse_datetime(data['created_at']),
            updated_at=_parse_datetime(data['updated_at']),
            name=data['name'],
            phone=data.get('phone'),
            address=data.get('address'),
            referred_by=data.get('referred_by'),
            note=data.get('note') or "",
            aggregates=CustomerAggregates.from_dict(data.get('aggregates')),
        )


@dataclass
class Loan(StorageRecord):
    """A principal lent to a customer, repaid through a fixed number of installments"""
    customer_id: str
    principal: Decimal
    repayable: Decimal
    installment_count: int
    origination_date: date
    status: LoanStatus = LoanStatus.PENDING
    note: str = ""

    @property
    def is_paid(self) -> bool:
        return self.status == LoanStatus.PAID

    @property
    def profit(self) -> Decimal:
        """Total profit expected over the life of the loan"""
        return self.repayable - self.principal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'customer_id': self.customer_id,
            'principal': str(self.principal),
            'repayable': str(self.repayable),
            'installment_count': self.installment_count,
            'origination_date': self.origination_date.isoformat(),
            'status': self.status.value,
            'note': self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=_parse_datetime(data['created_at']),
            updated_at=_parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            principal=Decimal(data['principal']),
            repayable=Decimal(data['repayable']),
            installment_count=int(data['installment_count']),
            origination_date=_parse_date(data['origination_date']),
            status=LoanStatus(data['status']),
            note=data.get('note') or "",
        )


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a loan"""
    loan_id: str
    sequence: int
    amount: Decimal
    due_date: date
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def is_overdue(self) -> bool:
        return self.status == InstallmentStatus.OVERDUE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'amount': str(self.amount),
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            id=data['id'],
            created_at=_parse_datetime(data['created_at']),
            updated_at=_parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            sequence=int(data['sequence']),
            amount=Decimal(data['amount']),
            due_date=_parse_date(data['due_date']),
            status=InstallmentStatus(data['status']),
            paid_at=_parse_datetime(data.get('paid_at')),
        )
