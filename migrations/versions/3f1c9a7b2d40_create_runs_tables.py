"""create_runs_tables

Revision ID: 3f1c9a7b2d40
Revises:
Create Date: 2026-09-28 11:04:17.518302

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7b2d40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # btree_gist: equality on user_id inside a gist exclusion constraint
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('timezone', sa.String(length=64), server_default='UTC', nullable=False),
        sa.Column('is_admin', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'day_marks',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('value', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('value = TRUE', name='ck_day_marks_value_true'),
        sa.PrimaryKeyConstraint('user_id', 'date'),
    )

    op.create_table(
        'click_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('value', sa.Boolean(), nullable=False),
        sa.Column('user_local_date', sa.Date(), nullable=False),
        sa.Column('user_timezone', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_click_events_user_id', 'click_events', ['user_id'])
    op.create_index('ix_click_events_user_id_id', 'click_events', ['user_id', 'id'])

    op.create_table(
        'projector_checkpoints',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('projector_name', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('last_event_id', sa.Integer(), server_default='0', nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('projector_name', 'user_id', name='uq_projector_user'),
    )
    op.create_index('ix_projector_checkpoints_projector_name', 'projector_checkpoints', ['projector_name'])
    op.create_index('ix_projector_checkpoints_user_id', 'projector_checkpoints', ['user_id'])

    op.create_table(
        'runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('day_count', sa.Integer(), nullable=False),
        sa.Column('active', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('last_extended_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('end_date >= start_date', name='ck_runs_span_valid'),
        sa.CheckConstraint('day_count >= 0', name='ck_runs_day_count_non_negative'),
        sa.CheckConstraint('day_count = end_date - start_date', name='ck_runs_day_count_matches_span'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_runs_user_end_date', 'runs', ['user_id', 'end_date'])
    op.create_index('ix_runs_user_start_date', 'runs', ['user_id', 'start_date'])
    op.create_index(
        'uq_runs_user_active', 'runs', ['user_id'],
        unique=True,
        postgresql_where=sa.text('active'),
    )
    # Два интервала одного пользователя не могут пересекаться
    op.execute(
        "ALTER TABLE runs ADD CONSTRAINT ex_runs_user_no_overlap "
        "EXCLUDE USING gist (user_id WITH =, daterange(start_date, end_date, '[)') WITH &&)"
    )

    op.create_table(
        'run_totals',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('year_month', sa.String(length=7), nullable=False),
        sa.Column('total_days', sa.Integer(), server_default='0', nullable=False),
        sa.Column('longest_run_days', sa.Integer(), server_default='0', nullable=False),
        sa.Column('active_run_days', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'year_month'),
    )

    op.create_table(
        'reconciliation_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('year_month', sa.String(length=7), nullable=False),
        sa.Column('check_type', sa.String(length=32), nullable=False),
        sa.Column('expected_value', sa.Integer(), nullable=True),
        sa.Column('actual_value', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), server_default='0', nullable=False),
        sa.Column('correlation_id', sa.String(length=36), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_reconciliation_log_user_month', 'reconciliation_log', ['user_id', 'year_month'])
    op.create_index('ix_reconciliation_log_correlation', 'reconciliation_log', ['correlation_id'])

    op.create_table(
        'run_backups',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('day_count', sa.Integer(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('backed_up_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_run_backups_operation_id', 'run_backups', ['operation_id'])

    op.create_table(
        'run_backfill_operations',
        sa.Column('operation_id', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('total_users', sa.Integer(), server_default='0', nullable=False),
        sa.Column('completed_users', sa.Integer(), server_default='0', nullable=False),
        sa.Column('failed_users', sa.Integer(), server_default='0', nullable=False),
        sa.Column('invariant_violations', sa.Integer(), server_default='0', nullable=False),
        sa.Column('skip_backup', sa.Boolean(), nullable=False),
        sa.Column('errors_json', JSONB, nullable=False),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('operation_id'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('run_backfill_operations')
    op.drop_index('ix_run_backups_operation_id', table_name='run_backups')
    op.drop_table('run_backups')
    op.drop_index('ix_reconciliation_log_correlation', table_name='reconciliation_log')
    op.drop_index('ix_reconciliation_log_user_month', table_name='reconciliation_log')
    op.drop_table('reconciliation_log')
    op.drop_table('run_totals')
    op.execute("ALTER TABLE runs DROP CONSTRAINT IF EXISTS ex_runs_user_no_overlap")
    op.drop_index('uq_runs_user_active', table_name='runs')
    op.drop_index('ix_runs_user_start_date', table_name='runs')
    op.drop_index('ix_runs_user_end_date', table_name='runs')
    op.drop_table('runs')
    op.drop_index('ix_projector_checkpoints_user_id', table_name='projector_checkpoints')
    op.drop_index('ix_projector_checkpoints_projector_name', table_name='projector_checkpoints')
    op.drop_table('projector_checkpoints')
    op.drop_index('ix_click_events_user_id_id', table_name='click_events')
    op.drop_index('ix_click_events_user_id', table_name='click_events')
    op.drop_table('click_events')
    op.drop_table('day_marks')
    op.drop_table('users')
