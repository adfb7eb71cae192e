"""Create strategy and trade tables

Revision ID: 001
Revises:
Create Date: 2025-01-06 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create strategies table
    op.create_table('strategies',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False, comment='0 = Sunday'),
        sa.Column('delta', sa.Float(), nullable=False),
        sa.Column('d1', sa.Integer(), nullable=False),
        sa.Column('d2', sa.Integer(), nullable=False),
        sa.Column('t1', sa.String(length=5), nullable=False, comment='Entry time HH-MM'),
        sa.Column('t2', sa.String(length=5), nullable=False, comment='Exit time HH-MM'),
        sa.Column('tp', sa.Float(), nullable=False),
        sa.Column('max_cost', sa.Float(), nullable=False),
        sa.Column('vix', sa.JSON(), nullable=True),
        sa.Column('vix_overnight_range', sa.JSON(), nullable=True),
        sa.Column('vix_intraday_range', sa.JSON(), nullable=True),
        sa.Column('averaging_drop_pct', sa.Float(), nullable=True),
        sa.Column('averaging_times', sa.JSON(), nullable=True),
        sa.Column('averaging_amount', sa.Float(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('last_executed', sa.String(length=32), nullable=True),
        sa.Column('results', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_strategies')
    )
    op.create_index('ix_strategies_id', 'strategies', ['id'], unique=False)
    op.create_index('ix_strategies_is_active', 'strategies', ['is_active'], unique=False)

    # Create strategy_trades table
    op.create_table('strategy_trades',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('strategy_id', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('entry_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('exit_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('entry_price', sa.Float(), nullable=True),
        sa.Column('exit_price', sa.Float(), nullable=True),
        sa.Column('contracts', sa.Integer(), nullable=False),
        sa.Column('pnl', sa.Float(), nullable=True),
        sa.Column('position', sa.JSON(), nullable=True),
        sa.Column('entry_order_id', sa.String(length=64), nullable=True),
        sa.Column('take_profit_order_id', sa.String(length=64), nullable=True),
        sa.Column('exit_order_id', sa.String(length=64), nullable=True),
        sa.Column('far_exit_order_id', sa.String(length=64), nullable=True),
        sa.Column('averaging_order_ids', sa.JSON(), nullable=False),
        sa.Column('take_profit_attempts', sa.Integer(), nullable=False),
        sa.Column('last_averaging_at', sa.String(length=32), nullable=True),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_strategy_trades')
    )
    op.create_index('ix_strategy_trades_id', 'strategy_trades', ['id'], unique=False)
    op.create_index('ix_strategy_trades_strategy_id', 'strategy_trades', ['strategy_id'], unique=False)
    op.create_index('ix_strategy_trades_status', 'strategy_trades', ['status'], unique=False)
    op.create_index('ix_strategy_trades_created_at', 'strategy_trades', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_strategy_trades_created_at', table_name='strategy_trades')
    op.drop_index('ix_strategy_trades_status', table_name='strategy_trades')
    op.drop_index('ix_strategy_trades_strategy_id', table_name='strategy_trades')
    op.drop_index('ix_strategy_trades_id', table_name='strategy_trades')
    op.drop_table('strategy_trades')

    op.drop_index('ix_strategies_is_active', table_name='strategies')
    op.drop_index('ix_strategies_id', table_name='strategies')
    op.drop_table('strategies')
