"""
Loan Servicing Engine

Amortization schedules, exactly-once payment allocation and arrears
classification for a microfinance loan book. All financial math uses Decimal.
"""

__version__ = "1.0.0"
