"""Create identity tables

Revision ID: create_identity_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_identity_tables'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('email', sa.String(256), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(100), nullable=False, server_default=''),
        sa.Column('display_name', sa.String(200), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='Active'),
        sa.Column('email_confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_login', sa.DateTime(), nullable=True),
        sa.Column('auth_provider', sa.String(20), nullable=False, server_default='local'),
        sa.Column('external_auth_id', sa.String(500), nullable=True),
        sa.Column('hashed_password', sa.String(255), nullable=True),
        sa.Column('password_changed_at', sa.DateTime(), nullable=True),
        sa.Column('password_reset_token_hash', sa.String(64), nullable=True),
        sa.Column('password_reset_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('mfa_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('mfa_secret', sa.Text(), nullable=True),
        sa.Column('mfa_enabled_at', sa.DateTime(), nullable=True),
        sa.Column('mfa_recovery_token_hash', sa.String(64), nullable=True),
        sa.Column('mfa_recovery_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('failed_login_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('account_locked_until', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_users_tenant_email'),
    )
    op.create_index('idx_users_email', 'users', ['email'])
    op.create_index('idx_users_tenant', 'users', ['tenant_id'])
    op.create_index('idx_users_status', 'users', ['status'])

    op.create_table(
        'user_roles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'role', name='uq_user_roles_user_role'),
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])

    op.create_table(
        'password_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('idx_password_history_user_created', 'password_history', ['user_id', 'created_at'])

    op.create_table(
        'mfa_backup_codes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code_hash', sa.String(100), nullable=False),
        sa.Column('is_used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('used_from_ip', sa.String(200), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('idx_mfa_backup_codes_user', 'mfa_backup_codes', ['user_id', 'is_used'])

    op.create_table(
        'ldap_configurations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False, unique=True),
        sa.Column('host', sa.String(255), nullable=False, server_default=''),
        sa.Column('port', sa.Integer(), nullable=False, server_default='389'),
        sa.Column('use_ssl', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('use_start_tls', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('connection_timeout', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('search_timeout', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('bind_dn', sa.String(500), nullable=False, server_default=''),
        sa.Column('bind_password', sa.Text(), nullable=True),
        sa.Column('base_dn', sa.String(500), nullable=False, server_default=''),
        sa.Column('user_search_filter', sa.String(500), nullable=False),
        sa.Column('group_search_filter', sa.String(500), nullable=False),
        sa.Column('user_dn_pattern', sa.String(500), nullable=False, server_default=''),
        sa.Column('email_attribute', sa.String(100), nullable=False, server_default='mail'),
        sa.Column('first_name_attribute', sa.String(100), nullable=False, server_default='givenName'),
        sa.Column('last_name_attribute', sa.String(100), nullable=False, server_default='sn'),
        sa.Column('display_name_attribute', sa.String(100), nullable=False, server_default='displayName'),
        sa.Column('group_membership_attribute', sa.String(100), nullable=False, server_default='memberOf'),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_provision_users', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('default_role', sa.String(100), nullable=True),
        sa.Column('group_role_mappings', sa.Text(), nullable=True),
        sa.Column('last_successful_auth', sa.DateTime(), nullable=True),
        sa.Column('last_validated', sa.DateTime(), nullable=True),
        sa.Column('last_synchronized', sa.DateTime(), nullable=True),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('validation_error', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_ldap_configurations_tenant_id', 'ldap_configurations', ['tenant_id'])

    op.create_table(
        'sso_configurations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('provider_name', sa.String(200), nullable=False, server_default=''),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('configuration_json', sa.Text(), nullable=True),
        sa.Column('entity_id', sa.String(500), nullable=True),
        sa.Column('sso_url', sa.String(1000), nullable=True),
        sa.Column('logout_url', sa.String(1000), nullable=True),
        sa.Column('certificate', sa.Text(), nullable=True),
        sa.Column('client_id', sa.String(500), nullable=True),
        sa.Column('client_secret', sa.Text(), nullable=True),
        sa.Column('scopes', sa.String(500), nullable=True),
        sa.Column('authority', sa.String(1000), nullable=True),
        sa.Column('callback_url', sa.String(1000), nullable=True),
        sa.Column('attribute_mappings', sa.Text(), nullable=True),
        sa.Column('default_role', sa.String(100), nullable=True),
        sa.Column('auto_provision_users', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_successful_auth', sa.DateTime(), nullable=True),
        sa.Column('last_validated', sa.DateTime(), nullable=True),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('validation_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'provider', name='uq_sso_configurations_tenant_provider'),
    )
    op.create_index('ix_sso_configurations_tenant_id', 'sso_configurations', ['tenant_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('timestamp', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('user_email', sa.String(255), nullable=False),
        sa.Column('tenant_id', sa.String(36), nullable=True),
        sa.Column('user_ip', sa.String(50), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', sa.String(100), nullable=True),
        sa.Column('auth_method', sa.String(20), nullable=True),
        sa.Column('request_body', sa.Text(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
    )
    op.create_index('idx_audit_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('idx_audit_user_id', 'audit_logs', ['user_id'])
    op.create_index('idx_audit_action', 'audit_logs', ['action'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('sso_configurations')
    op.drop_table('ldap_configurations')
    op.drop_table('mfa_backup_codes')
    op.drop_table('password_history')
    op.drop_table('user_roles')
    op.drop_table('users')
