"""
Repository for discovered stake transactions.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reward_tracker.models.transaction import Transaction


class TransactionRepository:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists_for_delegator(self, delegator_id: str) -> bool:
        result = await self.session.execute(
            select(Transaction.id).where(Transaction.delegator_id == delegator_id).limit(1)
        )
        return result.first() is not None

    async def exists_hash(self, transaction_hash: str) -> bool:
        result = await self.session.execute(
            select(Transaction.id).where(Transaction.transaction_hash == transaction_hash).limit(1)
        )
        return result.first() is not None

    def add(self, transaction: Transaction) -> Transaction:
        self.session.add(transaction)
        return transaction
