"""
Lending Core - Loan Accounting and Amortization Engine

Installment schedules under collection-day rules, interest models with a
reverse rate solver, penalty and late-interest accrual, a payment ledger with
non-destructive reversal, and a derived per-borrower credit score.
"""

__version__ = "1.0.0"
