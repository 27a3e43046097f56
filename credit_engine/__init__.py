"""
Credit Engine

Credit lifecycle and cash ledger synchronization for a microlending
operation: origination, installment schedules, late-fee accrual, early
settlement, refinancing and idempotent cash movements. All money uses Decimal.
"""

__version__ = "1.0.0"
