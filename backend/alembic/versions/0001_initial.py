"""create users, change requests, attachments and audit tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'change_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('change_type', sa.String(32), nullable=False),
        sa.Column('impact_level', sa.String(16), nullable=False),
        sa.Column('expected_downtime', sa.Text(), nullable=True),
        sa.Column('rollback_plan', sa.Text(), nullable=True),
        sa.Column('approver', sa.String(320), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='Pending'),
        sa.Column('created_by', sa.String(320), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_change_requests_approver', 'change_requests', ['approver'])
    op.create_index('ix_change_requests_status', 'change_requests', ['status'])
    op.create_index('ix_change_requests_created_by', 'change_requests', ['created_by'])

    op.create_table(
        'attachments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'request_id', sa.String(36),
            sa.ForeignKey('change_requests.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('content_type', sa.String(127), nullable=True),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('storage_key', sa.String(512), nullable=False, unique=True),
        sa.Column('uploaded_by', sa.String(320), nullable=False),
        sa.Column('idempotency_key', sa.String(128), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('request_id', 'idempotency_key', name='uq_attachment_idempotency'),
    )
    op.create_index('ix_attachments_request_id', 'attachments', ['request_id'])

    op.create_table(
        'blob_tombstones',
        sa.Column('storage_key', sa.String(512), primary_key=True),
        sa.Column('request_id', sa.String(36), nullable=True),
        sa.Column('reason', sa.String(255), nullable=False, server_default=''),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'request_id', sa.String(36),
            sa.ForeignKey('change_requests.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('actor', sa.String(320), nullable=True),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'])


def downgrade() -> None:
    op.drop_index('ix_audit_logs_request_id', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_table('blob_tombstones')
    op.drop_index('ix_attachments_request_id', table_name='attachments')
    op.drop_table('attachments')
    op.drop_index('ix_change_requests_created_by', table_name='change_requests')
    op.drop_index('ix_change_requests_status', table_name='change_requests')
    op.drop_index('ix_change_requests_approver', table_name='change_requests')
    op.drop_table('change_requests')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
