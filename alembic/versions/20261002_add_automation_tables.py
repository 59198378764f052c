"""
add automation rules, per-user state, audit log and run lease

Revision ID: 20261002_automation
Revises: 20261001_directory_activity
Create Date: 2026-10-02
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261002_automation'
down_revision = '20261001_directory_activity'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'automation_rules',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('scope', sa.Enum('coach', 'platform', name='rulescope'), nullable=False),
        sa.Column('owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('trigger_type', sa.String(), nullable=False),
        sa.Column('trigger_config', sa.JSON(), nullable=False),
        sa.Column('target_audience', sa.String(), nullable=False, server_default='clients'),
        sa.Column('audience_filters', sa.JSON(), nullable=False),
        sa.Column('signals_enabled', sa.JSON(), nullable=False),
        sa.Column('stages', sa.JSON(), nullable=False),
        sa.Column('channels', sa.JSON(), nullable=False),
        sa.Column('required_channels', sa.JSON(), nullable=True),
        sa.Column('message_subject', sa.String(), nullable=True),
        sa.Column('cooldown_days', sa.Integer(), nullable=True),
        sa.Column('max_sends_per_user', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_automation_rules_owner_id', 'automation_rules', ['owner_id'])
    op.create_index('ix_automation_rules_enabled_priority', 'automation_rules', ['enabled', 'priority'])

    op.create_table(
        'user_automation_states',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('rule_id', sa.String(), sa.ForeignKey('automation_rules.id'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('current_stage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('muted_until', sa.DateTime(), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('last_alert_at', sa.DateTime(), nullable=True),
        sa.Column('last_escalation_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('rule_id', 'user_id', name='uq_user_automation_state_rule_user'),
    )
    op.create_index('ix_user_automation_states_rule_id', 'user_automation_states', ['rule_id'])
    op.create_index('ix_user_automation_states_user_id', 'user_automation_states', ['user_id'])

    op.create_table(
        'automation_logs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('rule_id', sa.String(), sa.ForeignKey('automation_rules.id'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('action_kind', sa.String(), nullable=True),
        sa.Column('stage', sa.Integer(), nullable=True),
        sa.Column('rendered_message', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('reason', sa.String(), nullable=True),
        sa.Column('channel_results', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_automation_logs_user_id', 'automation_logs', ['user_id'])
    op.create_index(
        'ix_automation_logs_rule_user_status_created',
        'automation_logs',
        ['rule_id', 'user_id', 'status', 'created_at'],
    )

    op.create_table(
        'automation_leases',
        sa.Column('name', sa.String(), primary_key=True),
        sa.Column('holder', sa.String(), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('automation_leases')
    op.drop_index('ix_automation_logs_rule_user_status_created', table_name='automation_logs')
    op.drop_index('ix_automation_logs_user_id', table_name='automation_logs')
    op.drop_table('automation_logs')
    op.drop_index('ix_user_automation_states_user_id', table_name='user_automation_states')
    op.drop_index('ix_user_automation_states_rule_id', table_name='user_automation_states')
    op.drop_table('user_automation_states')
    op.drop_index('ix_automation_rules_enabled_priority', table_name='automation_rules')
    op.drop_index('ix_automation_rules_owner_id', table_name='automation_rules')
    op.drop_table('automation_rules')
    sa.Enum(name='rulescope').drop(op.get_bind(), checkfirst=True)
