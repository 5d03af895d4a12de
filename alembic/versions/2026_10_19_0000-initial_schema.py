"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit and prompt template tables."""

    # ========================================================================
    # Create credit_accounts table
    # ========================================================================
    op.create_table(
        'credit_accounts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_credit_balance_non_negative'),
        sa.UniqueConstraint('user_id', name='uq_credit_accounts_user_id'),
    )

    # ========================================================================
    # Create credit_transactions table
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_credit_transaction_amount_positive'),
        sa.CheckConstraint('balance_after >= 0', name='ck_credit_transaction_balance_non_negative'),
    )
    op.create_index(
        'idx_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at']
    )

    # ========================================================================
    # Create prompt_templates table
    # ========================================================================
    op.create_table(
        'prompt_templates',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('step', sa.String(20), nullable=False),
        sa.Column('system_prompt', sa.Text(), nullable=True),
        sa.Column('user_prompt', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),

        # Constraints
        sa.CheckConstraint('version >= 1', name='ck_prompt_template_version_positive'),
    )
    op.create_index(
        'idx_prompt_templates_step_updated', 'prompt_templates', ['step', 'updated_at']
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_prompt_templates_step_updated', table_name='prompt_templates')
    op.drop_table('prompt_templates')
    op.drop_index('idx_credit_transactions_user_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('credit_accounts')
