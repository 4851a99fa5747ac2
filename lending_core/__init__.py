"""
Lending Core

Loan management engine: product catalog, KYC-gated loan applications,
approval and disbursement workflow, amortization schedules, credit scoring
and repayment ledger. All financial math uses Decimal.
"""

__version__ = "1.0.0"
