"""
Loan Ledger

A loan-servicing ledger: monthly installment schedules, installment and loan
status tracking, per-customer rollups and a daily overdue sweep, all with
Decimal money math.
"""

__version__ = "1.0.0"
