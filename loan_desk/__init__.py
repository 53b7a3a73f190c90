"""
Loan Desk

Loan back-office core: loan applications, a formal lifecycle state machine,
an append-only payment/penalty ledger and role-scoped loan operations.
"""

__version__ = "1.0.0"
