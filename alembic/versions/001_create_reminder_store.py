"""create reminder store tables

Revision ID: 001_create_reminder_store
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_create_reminder_store'
down_revision = None
branch_labels = None
depends_on = None

JSONDocument = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'reminders',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False, server_default='Untitled'),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('snoozed_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notifications', JSONDocument, nullable=False),
        sa.Column('recurrence_rule', JSONDocument, nullable=True),
        sa.Column('generation_status', sa.String(), nullable=True),
        sa.Column('origin_id', sa.String(), nullable=True),
        sa.Column('root_id', sa.String(), nullable=True),
        sa.Column('occurrence_index', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('routine_id', sa.String(), nullable=True),
        sa.Column('routine_date', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_reminders_owner_id', 'reminders', ['owner_id'])
    op.create_index('ix_reminders_due_at', 'reminders', ['due_at'])
    op.create_index('ix_reminders_owner_status_due', 'reminders', ['owner_id', 'status', 'due_at'])
    op.create_index('ix_reminders_owner_generation', 'reminders', ['owner_id', 'generation_status'])
    op.create_index('ix_reminders_owner_routine', 'reminders', ['owner_id', 'routine_id'])

    op.create_table(
        'routines',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False, server_default='Untitled'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('steps', JSONDocument, nullable=False),
        sa.Column('schedule', JSONDocument, nullable=False),
        sa.Column('last_run', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_routines_owner_id', 'routines', ['owner_id'])
    op.create_index('ix_routines_owner_active', 'routines', ['owner_id', 'active'])

    op.create_table(
        'notification_queue',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('reminder_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('notification_setting_id', sa.String(), nullable=False),
        sa.Column('sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('routine_id', sa.String(), nullable=True),
        sa.Column('root_id', sa.String(), nullable=True),
    )
    op.create_index('ix_queue_owner_sent_scheduled', 'notification_queue', ['owner_id', 'sent', 'scheduled_at'])
    op.create_index('ix_queue_owner_reminder_sent', 'notification_queue', ['owner_id', 'reminder_id', 'sent'])
    op.create_index('ix_queue_owner_routine_sent', 'notification_queue', ['owner_id', 'routine_id', 'sent'])

    op.create_table(
        'owners',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone_number', sa.String(), nullable=True),
        sa.Column('sms_opt_in', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_rebuild_date', sa.String(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('owners')
    op.drop_index('ix_queue_owner_routine_sent', table_name='notification_queue')
    op.drop_index('ix_queue_owner_reminder_sent', table_name='notification_queue')
    op.drop_index('ix_queue_owner_sent_scheduled', table_name='notification_queue')
    op.drop_table('notification_queue')
    op.drop_index('ix_routines_owner_active', table_name='routines')
    op.drop_index('ix_routines_owner_id', table_name='routines')
    op.drop_table('routines')
    op.drop_index('ix_reminders_owner_routine', table_name='reminders')
    op.drop_index('ix_reminders_owner_generation', table_name='reminders')
    op.drop_index('ix_reminders_owner_status_due', table_name='reminders')
    op.drop_index('ix_reminders_due_at', table_name='reminders')
    op.drop_index('ix_reminders_owner_id', table_name='reminders')
    op.drop_table('reminders')
