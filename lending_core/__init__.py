"""
Lending Core

Transactional consistency engine for a small lending business: loans,
payments, a multi-user cash wallet ledger, a FIFO-matched USD lot inventory
and the derived monthly-profit and treasury rollups. All monetary math uses
Decimal and every mutation commits as one atomic transaction.
"""

__version__ = "1.0.0"
