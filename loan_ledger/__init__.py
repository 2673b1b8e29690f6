"""
Worker Loan Ledger

Issues short-term loans to workers, records repayments against them and
keeps a consistent, auditable balance under concurrent access. All
monetary values use Decimal; every mutation is written to a hash-chained
audit trail in the same transaction.
"""

__version__ = "1.0.0"
