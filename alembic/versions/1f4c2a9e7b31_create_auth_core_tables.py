"""create_auth_core_tables

Revision ID: 1f4c2a9e7b31
Revises:
Create Date: 2026-10-18 09:12:44.502117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '1f4c2a9e7b31'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


code_purpose = sa.Enum('SIGNUP', 'LOGIN', 'RESET_PASSCODE', name='codepurpose')
device_type = sa.Enum('TOUCH', 'FACE', 'SECURITY_KEY', 'OTHER', name='devicetype')
ceremony_type = sa.Enum('REGISTRATION', 'ASSERTION', name='ceremonytype')
event_type = sa.Enum(
    'IDENTIFIER_RESOLVED', 'OTP_SENT', 'OTP_VERIFIED', 'ACCOUNT_CREATED',
    'PASSCODE_VERIFIED', 'PASSCODE_SET', 'PASSCODE_CHANGED', 'PASSCODE_RESET',
    'BIOMETRIC_CHALLENGE_ISSUED', 'BIOMETRIC_VERIFIED', 'BIOMETRIC_REGISTERED', 'BIOMETRIC_REMOVED',
    'LOGIN_SUCCESS', 'LOGIN_FAILED', 'RATE_LIMIT_EXCEEDED', 'SETUP_COMPLETED',
    'SESSION_REFRESH', 'LOGOUT',
    name='eventtype',
)
risk_level = sa.Enum('LOW', 'MEDIUM', 'HIGH', 'CRITICAL', name='risklevel')


def upgrade() -> None:
    """
    Create identities, linked identities, one-time codes, passcodes,
    biometric credentials, ceremony challenges and security events.
    """
    op.create_table(
        'identities',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('os_id', sa.String(length=40), nullable=False),
        sa.Column('username', sa.String(length=20), nullable=True),
        sa.Column('is_setup_complete', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('is_verified', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_identities_id', 'identities', ['id'])
    op.create_index('ix_identities_os_id', 'identities', ['os_id'], unique=True)
    op.create_index('ix_identities_username', 'identities', ['username'], unique=True)

    op.create_table(
        'linked_identities',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('identity_id', sa.UUID(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_user_id', sa.String(length=128), nullable=False),
        sa.Column('provider_data', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['identity_id'], ['identities.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('provider', 'provider_user_id', name='uq_linked_identities_provider_user'),
    )
    op.create_index('ix_linked_identities_identity_id', 'linked_identities', ['identity_id'])

    op.create_table(
        'one_time_codes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('identifier', sa.String(length=160), nullable=False),
        sa.Column('purpose', code_purpose, nullable=False),
        sa.Column('identity_id', sa.UUID(), nullable=True),
        sa.Column('code_hash', sa.String(length=64), nullable=False),
        sa.Column('superseded_code_hash', sa.String(length=64), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('consumed', sa.Boolean(), server_default='false', nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['identity_id'], ['identities.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('identifier', 'purpose', name='uq_one_time_codes_identifier_purpose'),
    )
    op.create_index('ix_one_time_codes_id', 'one_time_codes', ['id'])
    op.create_index('ix_one_time_codes_identity_id', 'one_time_codes', ['identity_id'])
    op.create_index('ix_one_time_codes_expires_at', 'one_time_codes', ['expires_at'])

    op.create_table(
        'passcode_credentials',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('identity_id', sa.UUID(), nullable=False),
        sa.Column('passcode_hash', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['identity_id'], ['identities.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_passcode_credentials_identity_id', 'passcode_credentials', ['identity_id'], unique=True)

    op.create_table(
        'biometric_credentials',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('identity_id', sa.UUID(), nullable=False),
        sa.Column('credential_id', sa.String(length=512), nullable=False),
        sa.Column('public_key', sa.LargeBinary(), nullable=False),
        sa.Column('sign_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('device_name', sa.String(length=100), nullable=False),
        sa.Column('device_type', device_type, nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['identity_id'], ['identities.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_biometric_credentials_identity_id', 'biometric_credentials', ['identity_id'])
    op.create_index('ix_biometric_credentials_credential_id', 'biometric_credentials', ['credential_id'], unique=True)
    op.create_index('ix_biometric_credentials_identity_active', 'biometric_credentials', ['identity_id', 'is_active'])

    op.create_table(
        'auth_challenges',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('challenge', sa.String(length=128), nullable=False),
        sa.Column('ceremony', ceremony_type, nullable=False),
        sa.Column('identity_id', sa.UUID(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['identity_id'], ['identities.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_auth_challenges_challenge', 'auth_challenges', ['challenge'], unique=True)
    op.create_index('ix_auth_challenges_identity_id', 'auth_challenges', ['identity_id'])

    op.create_table(
        'security_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('identity_id', sa.UUID(), nullable=True),
        sa.Column('event_type', event_type, nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('risk_level', risk_level, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['identity_id'], ['identities.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_security_events_identity_id', 'security_events', ['identity_id'])
    op.create_index('ix_security_events_event_type', 'security_events', ['event_type'])
    op.create_index('ix_security_events_risk_level', 'security_events', ['risk_level'])
    op.create_index('ix_security_events_identity_created', 'security_events', ['identity_id', 'created_at'])


def downgrade() -> None:
    """
    Drop all auth core tables and their enum types.
    """
    op.drop_table('security_events')
    op.drop_table('auth_challenges')
    op.drop_table('biometric_credentials')
    op.drop_table('passcode_credentials')
    op.drop_table('one_time_codes')
    op.drop_table('linked_identities')
    op.drop_table('identities')

    bind = op.get_bind()
    for enum_type in (risk_level, event_type, ceremony_type, device_type, code_purpose):
        enum_type.drop(bind, checkfirst=True)
