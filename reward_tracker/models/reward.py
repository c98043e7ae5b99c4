"""
Reward model - the per-epoch reward ledger with running totals.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String, Integer, BigInteger, Float, DateTime, Index, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class Reward(BaseModel, TimestampMixin):
    """Inflation reward credited to one identity for one epoch."""

    __tablename__ = "rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    delegator_id: Mapped[str] = mapped_column(
        String(44),
        comment="Identity the reward was credited to"
    )

    epoch_num: Mapped[int] = mapped_column(
        BigInteger,
        comment="Epoch the reward was earned in"
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        comment="UTC midnight of the reward block's day"
    )

    fiat_rate: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        comment="USD per SOL on the reward's day"
    )

    # Amounts in lamports, values in USD
    reward: Mapped[int] = mapped_column(BigInteger)
    reward_usd: Mapped[float] = mapped_column(Float)

    total_reward: Mapped[int] = mapped_column(BigInteger)
    total_reward_usd: Mapped[float] = mapped_column(Float, default=0.0)

    pending_rewards: Mapped[int] = mapped_column(BigInteger)
    pending_rewards_usd: Mapped[float] = mapped_column(Float, default=0.0)

    post_balance: Mapped[int] = mapped_column(BigInteger)
    post_balance_usd: Mapped[float] = mapped_column(Float, default=0.0)

    staked_amount: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Delegated stake at the time, NULL for the validator"
    )
    staked_amount_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("delegator_id", "epoch_num", name="uq_rewards_delegator_epoch"),
        UniqueConstraint("delegator_id", "timestamp", name="uq_rewards_delegator_timestamp"),
        Index("idx_rewards_epoch", "epoch_num"),
        Index("idx_rewards_delegator_time", "delegator_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<Reward(delegator={self.delegator_id}, epoch={self.epoch_num}, "
            f"reward={self.reward}, total={self.total_reward})>"
        )
