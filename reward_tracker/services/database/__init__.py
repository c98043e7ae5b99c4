"""
Database repositories.
"""

from .delegator_repository import DelegatorRepository
from .reward_repository import RewardRepository
from .transaction_repository import TransactionRepository

__all__ = [
    "DelegatorRepository",
    "RewardRepository",
    "TransactionRepository",
]
