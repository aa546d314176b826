"""
Loan Ledger

Bookkeeping core for a micro-lending back office: loans, an append-only
transaction ledger, and the amortization engine that derives loan state
from it. All monetary values use Decimal precision.
"""

__version__ = "1.0.0"
