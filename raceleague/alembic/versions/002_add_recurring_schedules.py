"""add_recurring_schedules

Revision ID: 002
Revises: 001
Create Date: 2026-10-20 09:00:00.000000

Add recurring match schedules:
- recurring_schedules: one per event category, with player bounds and an enabled flag
- recurring_schedule_rules: weekdays + local start time, with the last generated start
- matches.recurring_schedule_id: link from generated matches back to their schedule
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(conn, table_name: str) -> bool:
    """Check if a table exists."""
    result = conn.execute(text(
        "SELECT EXISTS (SELECT FROM information_schema.tables WHERE table_name = :table_name)"
    ), {"table_name": table_name})
    return result.scalar()


def _column_exists(conn, table_name: str, column_name: str) -> bool:
    """Check if a column exists in a table."""
    result = conn.execute(text(
        "SELECT EXISTS (SELECT FROM information_schema.columns WHERE table_name = :table_name AND column_name = :column_name)"
    ), {"table_name": table_name, "column_name": column_name})
    return result.scalar()


def upgrade() -> None:
    conn = op.get_bind()

    if not _table_exists(conn, 'recurring_schedules'):
        op.create_table(
            'recurring_schedules',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column(
                'category',
                postgresql.ENUM(name='eventcategory', create_type=False),
                nullable=False,
            ),
            sa.Column('name', sa.String(), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('min_players', sa.Integer(), nullable=False, server_default='12'),
            sa.Column('max_players', sa.Integer(), nullable=False, server_default='20'),
            sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
            sa.Column('created_by', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.ForeignKeyConstraint(['created_by'], ['users.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('category'),
        )
        op.create_index('idx_recurring_schedules_enabled', 'recurring_schedules', ['is_enabled'])

    if not _table_exists(conn, 'recurring_schedule_rules'):
        op.create_table(
            'recurring_schedule_rules',
            sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
            sa.Column('schedule_id', sa.Integer(), nullable=False),
            sa.Column('days_of_week', postgresql.JSONB(), nullable=False),
            sa.Column('time_of_day', sa.String(), nullable=False),
            sa.Column('last_scheduled_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['schedule_id'], ['recurring_schedules.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
        )

    if not _column_exists(conn, 'matches', 'recurring_schedule_id'):
        op.add_column('matches', sa.Column('recurring_schedule_id', sa.Integer(), nullable=True))
        op.create_foreign_key(
            'fk_matches_recurring_schedule',
            'matches',
            'recurring_schedules',
            ['recurring_schedule_id'],
            ['id'],
            ondelete='SET NULL',
        )
        op.create_index('idx_matches_recurring_schedule', 'matches', ['recurring_schedule_id'])


def downgrade() -> None:
    op.drop_index('idx_matches_recurring_schedule', table_name='matches')
    op.drop_constraint('fk_matches_recurring_schedule', 'matches', type_='foreignkey')
    op.drop_column('matches', 'recurring_schedule_id')
    op.drop_table('recurring_schedule_rules')
    op.drop_index('idx_recurring_schedules_enabled', table_name='recurring_schedules')
    op.drop_table('recurring_schedules')
