"""
Microfinance Core

Financial computation and ledger-posting engine for a microfinance back office:
loan amortization, repayment allocation, schedule recalculation and
double-entry journal posting, all using Decimal arithmetic.
"""

__version__ = "1.0.0"
