"""marketplace_core_schema

Revision ID: 4c1e9a0d7b21
Revises:
Create Date: 2026-01-14 10:02:11.418230

Production-safe migration: only creates tables that do not exist yet.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '4c1e9a0d7b21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    if not table_exists('users'):
        op.create_table('users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('full_name', sa.String(), nullable=False),
            sa.Column('email', sa.String(), nullable=True),
            sa.Column('role', sa.String(), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
        op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    if not table_exists('packages'):
        op.create_table('packages',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('credits', sa.Integer(), nullable=False),
            sa.Column('duration_days', sa.Integer(), nullable=False),
            sa.Column('max_free_revisions', sa.Integer(), nullable=False),
            sa.Column('is_free', sa.Boolean(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_packages_id'), 'packages', ['id'], unique=False)

    if not table_exists('service_types'):
        op.create_table('service_types',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('base_credit_cost', sa.Integer(), nullable=False),
            sa.Column('priority_cost_low', sa.Integer(), nullable=False),
            sa.Column('priority_cost_medium', sa.Integer(), nullable=False),
            sa.Column('priority_cost_high', sa.Integer(), nullable=False),
            sa.Column('paid_revision_cost', sa.Integer(), nullable=False),
            sa.Column('attributes', sa.JSON(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_service_types_id'), 'service_types', ['id'], unique=False)

    if not table_exists('client_subscriptions'):
        op.create_table('client_subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('package_id', sa.Integer(), nullable=False),
            sa.Column('remaining_credits', sa.Integer(), nullable=False),
            sa.Column('start_date', sa.DateTime(), nullable=False),
            sa.Column('end_date', sa.DateTime(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.CheckConstraint('remaining_credits >= 0', name='ck_subscription_credits_non_negative'),
            sa.ForeignKeyConstraint(['package_id'], ['packages.id'], ),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_client_subscriptions_id'), 'client_subscriptions', ['id'], unique=False)
        op.create_index(op.f('ix_client_subscriptions_user_id'), 'client_subscriptions', ['user_id'], unique=False)
        op.create_index('idx_subscription_active_end', 'client_subscriptions', ['is_active', 'end_date'], unique=False)

    if not table_exists('requests'):
        op.create_table('requests',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('client_id', sa.Integer(), nullable=False),
            sa.Column('provider_id', sa.Integer(), nullable=True),
            sa.Column('service_type_id', sa.Integer(), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=False),
            sa.Column('title', sa.String(), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('status', sa.Enum(
                'PENDING', 'APPROVED', 'IN_PROGRESS', 'DELIVERED', 'REVISION_REQUESTED', 'COMPLETED', 'CANCELLED',
                name='requeststatus', native_enum=False, length=32,
            ), nullable=False),
            sa.Column('priority', sa.Integer(), nullable=False),
            sa.Column('credit_cost', sa.Integer(), nullable=False),
            sa.Column('base_credit_cost', sa.Integer(), nullable=False),
            sa.Column('priority_credit_cost', sa.Integer(), nullable=False),
            sa.Column('revision_credit_cost', sa.Integer(), nullable=False),
            sa.Column('current_revision_count', sa.Integer(), nullable=False),
            sa.Column('total_revisions', sa.Integer(), nullable=False),
            sa.Column('is_revision', sa.Boolean(), nullable=False),
            sa.Column('revision_type', sa.String(), nullable=True),
            sa.Column('attribute_responses', sa.JSON(), nullable=False),
            sa.Column('estimated_delivery', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(['client_id'], ['users.id'], ),
            sa.ForeignKeyConstraint(['provider_id'], ['users.id'], ),
            sa.ForeignKeyConstraint(['service_type_id'], ['service_types.id'], ),
            sa.ForeignKeyConstraint(['subscription_id'], ['client_subscriptions.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_requests_id'), 'requests', ['id'], unique=False)
        op.create_index(op.f('ix_requests_client_id'), 'requests', ['client_id'], unique=False)
        op.create_index(op.f('ix_requests_provider_id'), 'requests', ['provider_id'], unique=False)
        op.create_index(op.f('ix_requests_status'), 'requests', ['status'], unique=False)
        op.create_index('idx_request_open_pool', 'requests', ['status', 'provider_id'], unique=False)

    if not table_exists('request_comments'):
        op.create_table('request_comments',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('request_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('content', sa.Text(), nullable=False),
            sa.Column('type', sa.String(), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['request_id'], ['requests.id'], ),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_request_comments_id'), 'request_comments', ['id'], unique=False)
        op.create_index(op.f('ix_request_comments_request_id'), 'request_comments', ['request_id'], unique=False)

    if not table_exists('ratings'):
        op.create_table('ratings',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('request_id', sa.Integer(), nullable=False),
            sa.Column('client_id', sa.Integer(), nullable=False),
            sa.Column('provider_id', sa.Integer(), nullable=False),
            sa.Column('rating', sa.Integer(), nullable=False),
            sa.Column('review_text', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['client_id'], ['users.id'], ),
            sa.ForeignKeyConstraint(['provider_id'], ['users.id'], ),
            sa.ForeignKeyConstraint(['request_id'], ['requests.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('request_id')
        )
        op.create_index(op.f('ix_ratings_id'), 'ratings', ['id'], unique=False)
        op.create_index(op.f('ix_ratings_provider_id'), 'ratings', ['provider_id'], unique=False)

    if not table_exists('notifications'):
        op.create_table('notifications',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('title', sa.String(), nullable=False),
            sa.Column('message', sa.Text(), nullable=False),
            sa.Column('type', sa.String(), nullable=False),
            sa.Column('link', sa.String(), nullable=True),
            sa.Column('is_read', sa.Boolean(), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_notifications_id'), 'notifications', ['id'], unique=False)
        op.create_index(op.f('ix_notifications_user_id'), 'notifications', ['user_id'], unique=False)
        op.create_index(op.f('ix_notifications_created_at'), 'notifications', ['created_at'], unique=False)
        op.create_index('idx_notification_user_unread', 'notifications', ['user_id', 'is_read'], unique=False)
        op.create_index('idx_notification_user_title_created', 'notifications', ['user_id', 'title', 'created_at'], unique=False)


def downgrade() -> None:
    for table in (
        'notifications', 'ratings', 'request_comments', 'requests',
        'client_subscriptions', 'service_types', 'packages', 'users',
    ):
        if table_exists(table):
            op.drop_table(table)
