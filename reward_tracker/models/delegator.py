"""
Delegator model - tracked identities (delegators and the validator) with
their stake lifecycle.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, BigInteger, Boolean, Float, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class IdentityType(str, Enum):
    """Kind of tracked identity."""
    DELEGATOR = "delegator"
    VALIDATOR = "validator"


class Delegator(BaseModel, TimestampMixin):
    """A stake account delegating to the validator, or the validator itself."""

    __tablename__ = "delegators"

    delegator_id: Mapped[str] = mapped_column(
        String(44),
        primary_key=True,
        comment="Stake account (or validator identity) public key"
    )

    identity_type: Mapped[str] = mapped_column(
        String(16),
        default=IdentityType.DELEGATOR.value,
        comment="delegator or validator"
    )

    staked_amount: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Delegated stake in lamports as of last reconciliation"
    )

    activation_epoch: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Epoch the delegation was activated"
    )

    deactivation_epoch: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Epoch the delegation is deactivated, NULL while staked"
    )

    unstaked: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Whether the delegation has been withdrawn from the validator"
    )

    unstaked_epoch: Mapped[int] = mapped_column(
        BigInteger,
        default=-1,
        comment="Epoch the delegation stopped, -1 if never"
    )

    unstaked_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the delegation disappeared from the cluster"
    )

    apr: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        comment="Last trailing APR estimate in percent"
    )

    __table_args__ = (
        Index("idx_delegators_type_unstaked", "identity_type", "unstaked"),
    )

    def __repr__(self) -> str:
        return f"<Delegator(id={self.delegator_id}, unstaked={self.unstaked}, apr={self.apr})>"

    @property
    def effective_deactivation_epoch(self) -> float:
        """Deactivation epoch with +infinity standing in for "still staked"."""
        if self.deactivation_epoch is None:
            return math.inf
        return self.deactivation_epoch
