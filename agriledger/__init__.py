"""
Agricultural Lending Ledger

Loan lifecycle and repayment ledger for farmer credit: a pure loan state
machine, an append-only repayment ledger, an overdue sweep, and a loan
service that serializes every mutation per loan id.
"""

__version__ = "1.0.0"
