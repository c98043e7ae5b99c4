"""
Validator Reward Tracker

A background worker for a Solana validator that provides:
- Delegator lifecycle reconciliation (stake/unstake detection)
- Epoch-by-epoch staking reward backfill with USD valuation
- Trailing APR estimates per delegator
"""

__version__ = "0.1.0"
