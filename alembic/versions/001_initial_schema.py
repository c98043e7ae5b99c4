"""Initial schema - identities, reward ledger, stake transactions

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create delegators table
    op.create_table('delegators',
        sa.Column('delegator_id', sa.String(length=44), nullable=False, comment='Stake account (or validator identity) public key'),
        sa.Column('identity_type', sa.String(length=16), nullable=False, comment='delegator or validator'),
        sa.Column('staked_amount', sa.BigInteger(), nullable=False, comment='Delegated stake in lamports as of last reconciliation'),
        sa.Column('activation_epoch', sa.BigInteger(), nullable=False, comment='Epoch the delegation was activated'),
        sa.Column('deactivation_epoch', sa.BigInteger(), nullable=True, comment='Epoch the delegation is deactivated, NULL while staked'),
        sa.Column('unstaked', sa.Boolean(), nullable=False, comment='Whether the delegation has been withdrawn from the validator'),
        sa.Column('unstaked_epoch', sa.BigInteger(), nullable=False, comment='Epoch the delegation stopped, -1 if never'),
        sa.Column('unstaked_timestamp', sa.DateTime(timezone=True), nullable=True, comment='When the delegation disappeared from the cluster'),
        sa.Column('apr', sa.Float(), nullable=False, comment='Last trailing APR estimate in percent'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('delegator_id')
    )
    op.create_index('idx_delegators_type_unstaked', 'delegators', ['identity_type', 'unstaked'])

    # Create rewards table
    op.create_table('rewards',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('delegator_id', sa.String(length=44), nullable=False, comment='Identity the reward was credited to'),
        sa.Column('epoch_num', sa.BigInteger(), nullable=False, comment='Epoch the reward was earned in'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, comment="UTC midnight of the reward block's day"),
        sa.Column('fiat_rate', sa.Float(), nullable=False, comment="USD per SOL on the reward's day"),
        sa.Column('reward', sa.BigInteger(), nullable=False),
        sa.Column('reward_usd', sa.Float(), nullable=False),
        sa.Column('total_reward', sa.BigInteger(), nullable=False),
        sa.Column('total_reward_usd', sa.Float(), nullable=False),
        sa.Column('pending_rewards', sa.BigInteger(), nullable=False),
        sa.Column('pending_rewards_usd', sa.Float(), nullable=False),
        sa.Column('post_balance', sa.BigInteger(), nullable=False),
        sa.Column('post_balance_usd', sa.Float(), nullable=False),
        sa.Column('staked_amount', sa.BigInteger(), nullable=True, comment='Delegated stake at the time, NULL for the validator'),
        sa.Column('staked_amount_usd', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('delegator_id', 'epoch_num', name='uq_rewards_delegator_epoch'),
        sa.UniqueConstraint('delegator_id', 'timestamp', name='uq_rewards_delegator_timestamp')
    )
    op.create_index('idx_rewards_epoch', 'rewards', ['epoch_num'])
    op.create_index('idx_rewards_delegator_time', 'rewards', ['delegator_id', 'timestamp'])

    # Create transactions table
    op.create_table('transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('delegator_id', sa.String(length=44), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, comment='Block time of the transaction'),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='Staked amount in lamports'),
        sa.Column('fiat_rate', sa.Float(), nullable=False, comment="USD per SOL on the transaction's day"),
        sa.Column('fee', sa.Float(), nullable=False, comment='Transaction fee in SOL'),
        sa.Column('transaction_hash', sa.String(length=88), nullable=False),
        sa.Column('transaction_count', sa.Integer(), nullable=False, comment='Signatures known for the address at discovery time'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_hash')
    )
    op.create_index('idx_transactions_delegator', 'transactions', ['delegator_id'])


def downgrade() -> None:
    op.drop_index('idx_transactions_delegator', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index('idx_rewards_delegator_time', table_name='rewards')
    op.drop_index('idx_rewards_epoch', table_name='rewards')
    op.drop_table('rewards')
    op.drop_index('idx_delegators_type_unstaked', table_name='delegators')
    op.drop_table('delegators')
