"""Create payment ledger and review tables.

Revision ID: create_payment_ledger
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_payment_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('correlation_id', sa.String(100), nullable=True, unique=True),
        sa.Column('merchant_request_id', sa.String(100), nullable=True),
        sa.Column('payer_reference', sa.String(20), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('purpose', sa.String(30), nullable=False),
        sa.Column('subject_reference', sa.String(255), nullable=False, index=True),
        sa.Column('account_reference', sa.String(12), nullable=True),
        sa.Column('state', sa.String(20), nullable=False, server_default='created'),
        sa.Column('provider_receipt_id', sa.String(50), nullable=True),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )

    # Expiry sweep scans pushed rows by age
    op.create_index(
        'ix_payment_transactions_state_updated_at',
        'payment_transactions',
        ['state', 'updated_at'],
    )

    op.create_table(
        'payment_reviews',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('transaction_id', sa.Uuid(),
                  sa.ForeignKey('payment_transactions.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('reason', sa.String(50), nullable=False),
        sa.Column('expected_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('confirmed_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('payment_reviews')
    op.drop_index('ix_payment_transactions_state_updated_at', table_name='payment_transactions')
    op.drop_table('payment_transactions')
