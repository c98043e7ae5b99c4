"""
Transaction model - the on-chain stake transaction that opened a delegation.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import String, Integer, BigInteger, Float, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class TransactionType(str, Enum):
    STAKE = "STAKE"


class Transaction(BaseModel, TimestampMixin):
    """Stake transaction discovered for a delegator."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    delegator_id: Mapped[str] = mapped_column(String(44))

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        comment="Block time of the transaction"
    )

    type: Mapped[str] = mapped_column(String(16), default=TransactionType.STAKE.value)

    amount: Mapped[int] = mapped_column(
        BigInteger,
        comment="Staked amount in lamports"
    )

    fiat_rate: Mapped[float] = mapped_column(
        Float,
        comment="USD per SOL on the transaction's day"
    )

    fee: Mapped[float] = mapped_column(
        Float,
        comment="Transaction fee in SOL"
    )

    transaction_hash: Mapped[str] = mapped_column(String(88), unique=True)

    transaction_count: Mapped[int] = mapped_column(
        Integer,
        comment="Signatures known for the address at discovery time"
    )

    __table_args__ = (
        Index("idx_transactions_delegator", "delegator_id"),
    )

    def __repr__(self) -> str:
        return f"<Transaction(delegator={self.delegator_id}, type={self.type}, hash={self.transaction_hash[:16]})>"
