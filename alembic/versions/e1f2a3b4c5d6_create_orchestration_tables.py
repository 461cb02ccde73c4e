"""Create orchestration core tables

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'e1f2a3b4c5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. Collaborator records (owned by intent, planning and account services)
    op.create_table(
        'intents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('intent_id', sa.String(length=40), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=30), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=10), nullable=False, server_default='USD'),
        sa.Column('destination', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='ready'),
        sa.Column('error_code', sa.String(length=40), nullable=True),
        sa.Column('error_message', sa.String(length=1000), nullable=True),
        sa.Column('settlement_signature', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_intents_intent_id', 'intents', ['intent_id'], unique=True)
    op.create_index('ix_intents_user_id', 'intents', ['user_id'])
    op.create_index('ix_intents_status', 'intents', ['status'])

    op.create_table(
        'execution_plans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.String(length=40), nullable=False),
        sa.Column('intent_id', sa.String(length=40), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('goal_recap', sa.String(length=500), nullable=False),
        sa.Column('steps', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('total_max_spend_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_estimated_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expected_outcome', sa.String(length=500), nullable=True),
        sa.Column('warnings', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_execution_plans_plan_id', 'execution_plans', ['plan_id'], unique=True)
    op.create_index('ix_execution_plans_intent_id', 'execution_plans', ['intent_id'])
    op.create_index('ix_execution_plans_user_id', 'execution_plans', ['user_id'])
    op.create_index('ix_execution_plans_status', 'execution_plans', ['status'])

    op.create_table(
        'wallet_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('sub_organization_id', sa.String(length=100), nullable=False),
        sa.Column('wallet_address', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('per_transaction_limit_cents', sa.Integer(), nullable=False),
        sa.Column('daily_limit_cents', sa.Integer(), nullable=False),
        sa.Column('monthly_limit_cents', sa.Integer(), nullable=False),
        sa.Column('current_daily_spend_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_monthly_spend_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('spend_reset_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('require_2fa_above_cents', sa.Integer(), nullable=True),
        sa.Column('require_biometric', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('blocked_destinations', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_wallet_configs_user_id', 'wallet_configs', ['user_id'], unique=True)

    # 2. Approval queue
    op.create_table(
        'approval_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('approval_id', sa.String(length=30), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('plan_id', sa.String(length=40), nullable=False),
        sa.Column('intent_id', sa.String(length=40), nullable=False),
        sa.Column('preview', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('approval_mode', sa.String(length=10), nullable=False),
        sa.Column('countdown_started_at', sa.DateTime(), nullable=True),
        sa.Column('countdown_duration_ms', sa.Integer(), nullable=True),
        sa.Column('auto_approve_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.String(length=10), nullable=True),
        sa.Column('rejection_reason', sa.String(length=500), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_approval_queue_approval_id', 'approval_queue', ['approval_id'], unique=True)
    op.create_index('ix_approval_queue_plan_id', 'approval_queue', ['plan_id'], unique=True)
    op.create_index('ix_approval_queue_user_id', 'approval_queue', ['user_id'])
    op.create_index('ix_approval_queue_intent_id', 'approval_queue', ['intent_id'])
    op.create_index('ix_approval_queue_status', 'approval_queue', ['status'])
    op.create_index('ix_approval_queue_auto_approve_at', 'approval_queue', ['auto_approve_at'])
    op.create_index('ix_approval_queue_expires_at', 'approval_queue', ['expires_at'])

    # 3. Signing requests, signer activities, settlement outcomes
    op.create_table(
        'signing_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('request_id', sa.String(length=40), nullable=False),
        sa.Column('intent_id', sa.String(length=40), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('sub_organization_id', sa.String(length=100), nullable=False),
        sa.Column('wallet_address', sa.String(length=100), nullable=False),
        sa.Column('unsigned_transaction', sa.Text(), nullable=False),
        sa.Column('transaction_message', sa.String(length=1000), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('turnkey_activity_id', sa.String(length=100), nullable=True),
        sa.Column('signature', sa.Text(), nullable=True),
        sa.Column('settlement_signature', sa.String(length=128), nullable=True),
        sa.Column('error', sa.String(length=1000), nullable=True),
        sa.Column('confirmation_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('turnkey_activity_id'),
    )
    op.create_index('ix_signing_requests_request_id', 'signing_requests', ['request_id'], unique=True)
    op.create_index('ix_signing_requests_intent_id', 'signing_requests', ['intent_id'])
    op.create_index('ix_signing_requests_user_id', 'signing_requests', ['user_id'])
    op.create_index('ix_signing_requests_status', 'signing_requests', ['status'])
    op.create_index(
        'ix_signing_requests_settlement_signature', 'signing_requests', ['settlement_signature'],
    )

    op.create_table(
        'signing_activities',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('signing_request_id', sa.Integer(), nullable=False),
        sa.Column('activity_id', sa.String(length=100), nullable=False),
        sa.Column('activity_type', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('result', postgresql.JSONB(), nullable=True),
        sa.Column('error', sa.String(length=1000), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['signing_request_id'], ['signing_requests.id']),
    )
    op.create_index('ix_signing_activities_activity_id', 'signing_activities', ['activity_id'], unique=True)
    op.create_index(
        'ix_signing_activities_signing_request_id', 'signing_activities', ['signing_request_id'],
    )
    op.create_index('ix_signing_activities_status', 'signing_activities', ['status'])

    op.create_table(
        'settlement_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('signing_request_id', sa.Integer(), nullable=False),
        sa.Column('intent_id', sa.String(length=40), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('settlement_signature', sa.String(length=128), nullable=True),
        sa.Column('confirmation_time_ms', sa.Integer(), nullable=True),
        sa.Column('within_target', sa.Boolean(), nullable=True),
        sa.Column('slot', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error', sa.String(length=1000), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['signing_request_id'], ['signing_requests.id']),
    )
    op.create_index(
        'ix_settlement_records_signing_request_id', 'settlement_records', ['signing_request_id'],
    )
    op.create_index('ix_settlement_records_intent_id', 'settlement_records', ['intent_id'])
    op.create_index('ix_settlement_records_user_id', 'settlement_records', ['user_id'])

    # 4. Per-user audit chain
    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=40), nullable=False),
        sa.Column('intent_id', sa.String(length=40), nullable=True),
        sa.Column('plan_id', sa.String(length=40), nullable=True),
        sa.Column('approval_id', sa.String(length=30), nullable=True),
        sa.Column('signing_request_id', sa.String(length=40), nullable=True),
        sa.Column('event_data', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('previous_hash', sa.String(length=64), nullable=False),
        sa.Column('event_hash', sa.String(length=64), nullable=False),
        sa.Column('anchored_to_chain', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'sequence', name='uq_audit_log_user_sequence'),
    )
    op.create_index('ix_audit_log_event_id', 'audit_log', ['event_id'], unique=True)
    op.create_index('ix_audit_log_user_id', 'audit_log', ['user_id'])
    op.create_index('ix_audit_log_event_type', 'audit_log', ['event_type'])
    op.create_index('ix_audit_log_intent_id', 'audit_log', ['intent_id'])
    op.create_index('ix_audit_log_plan_id', 'audit_log', ['plan_id'])
    op.create_index('ix_audit_log_timestamp', 'audit_log', ['timestamp'])

    # 5. Durable scheduler
    op.create_table(
        'scheduled_tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('task_id', sa.String(length=40), nullable=False),
        sa.Column('task_name', sa.String(length=80), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_scheduled_tasks_task_id', 'scheduled_tasks', ['task_id'], unique=True)
    op.create_index('ix_scheduled_tasks_task_name', 'scheduled_tasks', ['task_name'])
    op.create_index('ix_scheduled_tasks_run_at', 'scheduled_tasks', ['run_at'])
    op.create_index('ix_scheduled_tasks_status', 'scheduled_tasks', ['status'])


def downgrade() -> None:
    op.drop_table('scheduled_tasks')
    op.drop_table('audit_log')
    op.drop_table('settlement_records')
    op.drop_table('signing_activities')
    op.drop_table('signing_requests')
    op.drop_table('approval_queue')
    op.drop_table('wallet_configs')
    op.drop_table('execution_plans')
    op.drop_table('intents')
