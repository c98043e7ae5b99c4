"""
Database models for the validator reward tracker.

Contains SQLAlchemy models for tracked identities, the per-epoch reward
ledger and discovered stake transactions.
"""

from .base import Base, BaseModel, TimestampMixin
from .delegator import Delegator, IdentityType
from .reward import Reward
from .transaction import Transaction, TransactionType

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Delegator",
    "IdentityType",
    "Reward",
    "Transaction",
    "TransactionType",
]
