"""
Shared fixtures for the loan ledger tests
"""

import pytest
from datetime import datetime, timezone, timedelta, date

from loan_ledger.config import LedgerConfig
from loan_ledger.ledger import LoanLedger
from loan_ledger.storage import InMemoryStorage


class FakeClock:
    """Controllable clock; returns a fixed UTC instant until moved"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set_date(self, day: date, hour: int = 12) -> None:
        self.now = datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)

    def advance(self, days: int = 0, **kwargs) -> None:
        self.now = self.now + timedelta(days=days, **kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger_config():
    return LedgerConfig(database_url="memory://", sweep_enabled=False, sweep_before_reads=True)


@pytest.fixture
def ledger(clock, ledger_config):
    """In-memory ledger with a controllable clock"""
    return LoanLedger(storage=InMemoryStorage(), config=ledger_config, clock=clock)


@pytest.fixture
def customer(ledger):
    return ledger.create_customer("Maria Silva", phone="555-0100")
