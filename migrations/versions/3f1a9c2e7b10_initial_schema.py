"""initial_schema

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-02 09:14:22.481305+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. organizations (no FKs)
    op.create_table('organizations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('slug', sa.String(length=50), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
    sa.Column('settings', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint("status IN ('active', 'suspended')", name='chk_org_status'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('slug')
    )
    op.create_index('idx_organizations_status', 'organizations', ['status'], unique=False)

    # 2. users (global identity)
    op.create_table('users',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=False),
    sa.Column('full_name', sa.String(length=200), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.Column('deactivated_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('email')
    )
    op.create_index('idx_users_email', 'users', ['email'], unique=False)

    # 3. organization_members (per-org workflow role)
    op.create_table('organization_members',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('user_id', sa.UUID(), nullable=False),
    sa.Column('workflow_role', sa.String(length=30), nullable=False, server_default='submitter'),
    sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint(
        "workflow_role IN ('submitter', 'reviewer', 'approver', 'store_manager', 'super_admin')",
        name='chk_org_member_role',
    ),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('org_id', 'user_id', name='uq_org_member')
    )
    op.create_index('idx_org_members_role', 'organization_members', ['org_id', 'workflow_role'], unique=False)
    op.create_index('idx_org_members_user', 'organization_members', ['user_id'], unique=False)

    # 4. projects + expense_accounts
    op.create_table('projects',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('code', sa.String(length=50), nullable=True),
    sa.Column('budget', sa.Numeric(precision=15, scale=2), nullable=True),
    sa.Column('spent_amount', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0'),
    sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint('budget IS NULL OR budget >= 0', name='chk_project_budget'),
    sa.CheckConstraint('spent_amount >= 0', name='chk_project_spent'),
    sa.CheckConstraint(
        'budget IS NULL OR budget = 0 OR spent_amount <= budget',
        name='chk_project_spent_within_budget',
    ),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('org_id', 'code', name='uq_project_org_code')
    )
    op.create_index('idx_projects_org', 'projects', ['org_id'], unique=False)

    op.create_table('expense_accounts',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('project_id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('code', sa.String(length=50), nullable=True),
    sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_expense_accounts_project', 'expense_accounts', ['project_id'], unique=False)
    op.create_index('idx_expense_accounts_org', 'expense_accounts', ['org_id'], unique=False)

    # 5. requisitions + items + comments
    op.create_table('requisitions',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('project_id', sa.UUID(), nullable=False),
    sa.Column('expense_account_id', sa.UUID(), nullable=True),
    sa.Column('requisition_number', sa.String(length=20), nullable=False),
    sa.Column('title', sa.String(length=255), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
    sa.Column('total_amount', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0'),
    sa.Column('submitted_by', sa.UUID(), nullable=False),
    sa.Column('reviewed_by', sa.UUID(), nullable=True),
    sa.Column('approved_by', sa.UUID(), nullable=True),
    sa.Column('rejection_reason', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.Column('submitted_at', sa.DateTime(), nullable=True),
    sa.Column('reviewed_at', sa.DateTime(), nullable=True),
    sa.Column('approved_at', sa.DateTime(), nullable=True),
    sa.Column('rejected_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint(
        "status IN ('draft', 'pending', 'under_review', 'reviewed', 'approved', 'rejected')",
        name='chk_requisition_status',
    ),
    sa.CheckConstraint('total_amount >= 0', name='chk_requisition_total'),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ),
    sa.ForeignKeyConstraint(['expense_account_id'], ['expense_accounts.id'], ),
    sa.ForeignKeyConstraint(['submitted_by'], ['users.id'], ),
    sa.ForeignKeyConstraint(['reviewed_by'], ['users.id'], ),
    sa.ForeignKeyConstraint(['approved_by'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('requisition_number')
    )
    op.create_index('idx_requisitions_org_status', 'requisitions', ['org_id', 'status'], unique=False)
    op.create_index('idx_requisitions_project_status', 'requisitions', ['project_id', 'status'], unique=False)
    op.create_index('idx_requisitions_submitter', 'requisitions', ['submitted_by'], unique=False)
    op.create_index('idx_requisitions_expense_account', 'requisitions', ['expense_account_id'], unique=False)

    op.create_table('requisition_items',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('requisition_id', sa.UUID(), nullable=False),
    sa.Column('line_number', sa.Integer(), nullable=False),
    sa.Column('description', sa.Text(), nullable=False),
    sa.Column('quantity', sa.Numeric(precision=12, scale=3), nullable=False),
    sa.Column('unit_price', sa.Numeric(precision=15, scale=2), nullable=False),
    sa.Column('line_total', sa.Numeric(precision=15, scale=2), nullable=False),
    sa.Column('unit_of_measure', sa.String(length=30), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint('quantity > 0', name='chk_requisition_item_qty'),
    sa.CheckConstraint('unit_price >= 0', name='chk_requisition_item_price'),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['requisition_id'], ['requisitions.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('requisition_id', 'line_number', name='uq_requisition_line')
    )
    op.create_index('idx_requisition_items_requisition', 'requisition_items', ['requisition_id'], unique=False)

    op.create_table('comments',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('requisition_id', sa.UUID(), nullable=False),
    sa.Column('user_id', sa.UUID(), nullable=False),
    sa.Column('comment_text', sa.Text(), nullable=False),
    sa.Column('is_internal', sa.Boolean(), nullable=False, server_default=sa.text('false')),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['requisition_id'], ['requisitions.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_comments_requisition', 'comments', ['requisition_id', 'created_at'], unique=False)

    # 6. transition events (dispatcher input)
    op.create_table('requisition_transitions',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('requisition_id', sa.UUID(), nullable=False),
    sa.Column('from_status', sa.String(length=20), nullable=False),
    sa.Column('to_status', sa.String(length=20), nullable=False),
    sa.Column('actor_id', sa.UUID(), nullable=False),
    sa.Column('note', sa.Text(), nullable=True),
    sa.Column('title', sa.String(length=255), nullable=True),
    sa.Column('reviewed_by', sa.UUID(), nullable=True),
    sa.Column('total_amount', sa.Numeric(precision=15, scale=2), nullable=True),
    sa.Column('dispatch_status', sa.String(length=20), nullable=False, server_default='pending'),
    sa.Column('dispatch_attempts', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('last_error', sa.Text(), nullable=True),
    sa.Column('dispatched_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint(
        "dispatch_status IN ('pending', 'sent', 'failed')",
        name='chk_transition_dispatch_status',
    ),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['requisition_id'], ['requisitions.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['actor_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['reviewed_by'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_transitions_requisition', 'requisition_transitions', ['requisition_id', 'created_at'], unique=False)
    op.create_index('idx_transitions_dispatch', 'requisition_transitions', ['dispatch_status', 'created_at'], unique=False)

    # 7. notifications + email outbox
    op.create_table('notifications',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('user_id', sa.UUID(), nullable=False),
    sa.Column('transition_id', sa.UUID(), nullable=True),
    sa.Column('comment_id', sa.UUID(), nullable=True),
    sa.Column('requisition_id', sa.UUID(), nullable=True),
    sa.Column('type', sa.String(length=50), nullable=False),
    sa.Column('title', sa.String(length=255), nullable=False),
    sa.Column('message', sa.Text(), nullable=False),
    sa.Column('link', sa.String(length=255), nullable=True),
    sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.text('false')),
    sa.Column('read_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['transition_id'], ['requisition_transitions.id'], ondelete='SET NULL'),
    sa.ForeignKeyConstraint(['comment_id'], ['comments.id'], ondelete='SET NULL'),
    sa.ForeignKeyConstraint(['requisition_id'], ['requisitions.id'], ondelete='SET NULL'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('transition_id', 'user_id', name='uq_notification_transition_user'),
    sa.UniqueConstraint('comment_id', 'user_id', name='uq_notification_comment_user')
    )
    op.create_index('idx_notifications_user_unread', 'notifications', ['user_id', 'is_read', 'created_at'], unique=False)
    op.create_index('idx_notifications_org', 'notifications', ['org_id'], unique=False)

    op.create_table('email_notifications',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('org_id', sa.UUID(), nullable=False),
    sa.Column('user_id', sa.UUID(), nullable=True),
    sa.Column('transition_id', sa.UUID(), nullable=True),
    sa.Column('requisition_id', sa.UUID(), nullable=True),
    sa.Column('recipient_email', sa.String(length=255), nullable=False),
    sa.Column('notification_type', sa.String(length=50), nullable=False),
    sa.Column('subject', sa.String(length=255), nullable=False),
    sa.Column('body_html', sa.Text(), nullable=False),
    sa.Column('body_text', sa.Text(), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
    sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('sent_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint("status IN ('pending', 'sent', 'failed')", name='chk_email_status'),
    sa.ForeignKeyConstraint(['org_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
    sa.ForeignKeyConstraint(['transition_id'], ['requisition_transitions.id'], ondelete='SET NULL'),
    sa.ForeignKeyConstraint(['requisition_id'], ['requisitions.id'], ondelete='SET NULL'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('transition_id', 'user_id', name='uq_email_transition_user')
    )
    op.create_index('idx_email_notifications_queue', 'email_notifications', ['status', 'retry_count', 'created_at'], unique=False)

    # 8. number counters
    op.create_table('sequence_counters',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('kind', sa.String(length=10), nullable=False),
    sa.Column('year', sa.Integer(), nullable=False),
    sa.Column('current_value', sa.BigInteger(), nullable=False, server_default='0'),
    sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('kind', 'year', name='uq_sequence_kind_year')
    )

    # 9. security audit log (no FKs, must accept rows for unknown ids)
    op.create_table('security_audit_logs',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('event_type', sa.String(length=50), nullable=False),
    sa.Column('severity', sa.String(length=20), nullable=False, server_default='warning'),
    sa.Column('actor_id', sa.UUID(), nullable=True),
    sa.Column('current_org_id', sa.UUID(), nullable=True),
    sa.Column('target_org_id', sa.UUID(), nullable=True),
    sa.Column('resource_type', sa.String(length=50), nullable=True),
    sa.Column('resource_id', sa.UUID(), nullable=True),
    sa.Column('action_attempted', sa.String(length=50), nullable=True),
    sa.Column('message', sa.Text(), nullable=False),
    sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('was_blocked', sa.Boolean(), nullable=False, server_default=sa.text('true')),
    sa.Column('request_id', sa.String(length=64), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    sa.CheckConstraint("severity IN ('info', 'warning', 'critical')", name='chk_security_audit_severity'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_security_audit_event', 'security_audit_logs', ['event_type'], unique=False)
    op.create_index('idx_security_audit_current_org', 'security_audit_logs', ['current_org_id'], unique=False)
    op.create_index('idx_security_audit_target_org', 'security_audit_logs', ['target_org_id'], unique=False)
    op.create_index('idx_security_audit_created', 'security_audit_logs', [sa.text('created_at DESC')], unique=False)


def downgrade() -> None:
    op.drop_table('security_audit_logs')
    op.drop_table('sequence_counters')
    op.drop_table('email_notifications')
    op.drop_table('notifications')
    op.drop_table('requisition_transitions')
    op.drop_table('comments')
    op.drop_table('requisition_items')
    op.drop_table('requisitions')
    op.drop_table('expense_accounts')
    op.drop_table('projects')
    op.drop_table('organization_members')
    op.drop_table('users')
    op.drop_table('organizations')
