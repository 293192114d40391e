"""Create users and transactions tables

Revision ID: 20261016_0900
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20261016_0900'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the ledger schema."""
    op.execute("CREATE TYPE userrole AS ENUM ('student', 'company')")
    op.execute(
        "CREATE TYPE transactionstatus AS ENUM ('pending', 'completed', 'canceled', 'expired')"
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('role', postgresql.ENUM('student', 'company', name='userrole', create_type=False), nullable=False, server_default='student'),
        sa.Column('plan_badge', sa.String(length=50), nullable=False, server_default='free'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tran_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('plan', sa.String(length=50), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('status', postgresql.ENUM('pending', 'completed', 'canceled', 'expired', name='transactionstatus', create_type=False), nullable=False, server_default='pending'),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('payment_status', sa.String(length=64), nullable=True),
        sa.Column('payment_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('payment_currency', sa.String(length=3), nullable=True),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_transactions_id', 'transactions', ['id'])
    op.create_index('ix_transactions_tran_id', 'transactions', ['tran_id'], unique=True)
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_expires_at', 'transactions', ['expires_at'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])
    # Plan lookups: latest transaction per user by payment date
    op.create_index(
        'ix_transactions_user_status_date',
        'transactions',
        ['user_id', 'status', 'transaction_date'],
    )


def downgrade() -> None:
    """Drop the ledger schema."""
    op.drop_index('ix_transactions_user_status_date', table_name='transactions')
    op.drop_index('ix_transactions_created_at', table_name='transactions')
    op.drop_index('ix_transactions_expires_at', table_name='transactions')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_transactions_user_id', table_name='transactions')
    op.drop_index('ix_transactions_tran_id', table_name='transactions')
    op.drop_index('ix_transactions_id', table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_id', table_name='users')
    op.drop_table('users')

    op.execute("DROP TYPE transactionstatus")
    op.execute("DROP TYPE userrole")
