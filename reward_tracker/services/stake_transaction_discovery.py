"""
Stake transaction discovery.

Finds the transaction that delegated a stake account to the validator and
records it with its fee and the SOL price of that day.
"""

from datetime import datetime, timezone

import structlog
from solana.constants import LAMPORTS_PER_SOL

from reward_tracker.core.config import TrackerConfig
from reward_tracker.core.database import get_async_session
from reward_tracker.models.transaction import Transaction, TransactionType
from .database import TransactionRepository


logger = structlog.get_logger(__name__)


class StakeTransactionDiscovery:
    """Backfills the originating stake transaction of a delegator."""

    def __init__(self, config: TrackerConfig, network_client, price_service):
        self.config = config
        self.network_client = network_client
        self.price_service = price_service
        self.logger = logger.bind(service="stake_transaction_discovery")

    async def discover(self, delegator_id: str, staked_amount: int) -> int:
        """
        Record the stake transactions of ``delegator_id`` that involve the validator.

        Failures are logged and swallowed; the reconciler retries on its next tick
        for delegators that still have no transaction.

        Returns:
            Number of transactions recorded
        """
        try:
            signatures = await self.network_client.get_signatures_for_address(delegator_id)
            recorded = 0

            for signature in signatures:
                info = await self.network_client.get_transaction(signature)
                if info is None or not info.block_time:
                    continue
                if self.config.validator_pub_key not in info.account_keys:
                    continue

                async with get_async_session() as session:
                    transactions = TransactionRepository(session)
                    if await transactions.exists_hash(signature):
                        continue

                block_time = datetime.fromtimestamp(info.block_time, tz=timezone.utc)
                fiat_rate = await self.price_service.price_at_utc_date(block_time)

                async with get_async_session() as session:
                    TransactionRepository(session).add(Transaction(
                        delegator_id=delegator_id,
                        timestamp=block_time,
                        type=TransactionType.STAKE.value,
                        amount=staked_amount,
                        fiat_rate=fiat_rate,
                        fee=info.fee / LAMPORTS_PER_SOL,
                        transaction_hash=signature,
                        transaction_count=len(signatures),
                    ))
                recorded += 1

                self.logger.info(
                    "Stake transaction recorded",
                    delegator=delegator_id,
                    signature=signature
                )

            return recorded

        except Exception as e:
            self.logger.error(
                "Stake transaction discovery failed",
                delegator=delegator_id,
                error=str(e)
            )
            return 0
