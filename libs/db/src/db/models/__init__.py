"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the banking models used by ``calycompta``.
"""

from .banking import BankTransaction, Base, Club

__all__ = [
    "Base",
    "Club",
    "BankTransaction",
]
