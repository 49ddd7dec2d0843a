"""Baseline: patients, providers, availability, appointments, idempotency, audit.

Revision ID: 20261019_0900
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from booking_sync.db import types
from booking_sync.db.models.appointments import POSTGRES_OVERLAP_DDL, SQLITE_OVERLAP_DDL


# revision identifiers, used by Alembic.
revision: str = "20261019_0900"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    dialect = op.get_bind().dialect.name

    op.create_table('providers',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('timezone', sa.String(length=50), nullable=False),
    sa.Column('external_practitioner_id', sa.String(length=64), nullable=True),
    sa.Column('external_service_id', sa.String(length=64), nullable=True),
    sa.Column('is_active', sa.Boolean(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_table('payers',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('external_insurance_name', sa.String(length=255), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_table('patients',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('canonical_email', sa.String(length=320), nullable=False),
    sa.Column('first_name', sa.String(length=100), nullable=False),
    sa.Column('last_name', sa.String(length=100), nullable=False),
    sa.Column('date_of_birth', sa.Date(), nullable=True),
    sa.Column('phone', sa.String(length=20), nullable=True),
    sa.Column('external_client_id', sa.String(length=64), nullable=True),
    sa.Column('external_email_alias', sa.String(length=320), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_patients_canonical_email'), 'patients', ['canonical_email'], unique=False)
    op.create_index(
        'uq_patients_strong_identity',
        'patients',
        ['canonical_email', sa.text('lower(first_name)'), sa.text('lower(last_name)'), 'date_of_birth'],
        unique=True,
    )

    op.create_table('availability_rules',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('provider_id', sa.Uuid(), nullable=False),
    sa.Column('day_of_week', sa.Integer(), nullable=False),
    sa.Column('start_time', sa.Time(), nullable=False),
    sa.Column('end_time', sa.Time(), nullable=False),
    sa.Column('is_recurring', sa.Boolean(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.CheckConstraint('day_of_week >= 0 AND day_of_week <= 6', name='ck_valid_day_of_week'),
    sa.CheckConstraint('start_time < end_time', name='ck_availability_rule_window'),
    sa.ForeignKeyConstraint(['provider_id'], ['providers.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_availability_rules_provider', 'availability_rules', ['provider_id', 'day_of_week'], unique=False)

    op.create_table('availability_exceptions',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('provider_id', sa.Uuid(), nullable=False),
    sa.Column('exception_date', sa.Date(), nullable=False),
    sa.Column('kind', sa.String(length=20), nullable=False),
    sa.Column('start_time', sa.Time(), nullable=True),
    sa.Column('end_time', sa.Time(), nullable=True),
    sa.Column('reason', sa.String(length=255), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.CheckConstraint('(start_time IS NULL) = (end_time IS NULL)', name='ck_availability_exception_bounds'),
    sa.ForeignKeyConstraint(['provider_id'], ['providers.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_availability_exceptions_provider_date', 'availability_exceptions', ['provider_id', 'exception_date'], unique=False)

    op.create_table('appointments',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('patient_id', sa.Uuid(), nullable=False),
    sa.Column('provider_id', sa.Uuid(), nullable=False),
    sa.Column('payer_id', sa.Uuid(), nullable=True),
    sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('end_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('idempotency_key', sa.String(length=255), nullable=False),
    sa.Column('external_appointment_id', sa.String(length=64), nullable=True),
    sa.Column('enrichment_fields', types.JsonType, nullable=True),
    sa.Column('enrichment_status', sa.String(length=20), nullable=False),
    sa.Column('sync_attempts', sa.Integer(), nullable=False),
    sa.Column('last_sync_attempt_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('last_sync_error', sa.String(length=500), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    sa.CheckConstraint('start_at < end_at', name='ck_appointment_interval'),
    sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['provider_id'], ['providers.id'], ondelete='RESTRICT'),
    sa.ForeignKeyConstraint(['payer_id'], ['payers.id'], ondelete='SET NULL'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('idempotency_key')
    )
    op.create_index('idx_appointments_provider_start', 'appointments', ['provider_id', 'start_at'], unique=False)
    op.create_index('idx_appointments_patient', 'appointments', ['patient_id'], unique=False)
    op.create_index('idx_appointments_sync', 'appointments', ['status', 'external_appointment_id'], unique=False)

    if dialect == 'postgresql':
        for statement in POSTGRES_OVERLAP_DDL:
            op.execute(statement)
    elif dialect == 'sqlite':
        for statement in SQLITE_OVERLAP_DDL:
            op.execute(statement)

    op.create_table('idempotency_records',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('idempotency_key', sa.String(length=255), nullable=False),
    sa.Column('request_fingerprint', sa.String(length=64), nullable=False),
    sa.Column('appointment_id', sa.Uuid(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('idempotency_key')
    )

    op.create_table('sync_audit_log',
    sa.Column('id', sa.Uuid(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('action', sa.String(length=40), nullable=False),
    sa.Column('status', sa.String(length=30), nullable=False),
    sa.Column('reason', sa.String(length=40), nullable=True),
    sa.Column('patient_id', sa.Uuid(), nullable=True),
    sa.Column('appointment_id', sa.Uuid(), nullable=True),
    sa.Column('external_client_id', sa.String(length=64), nullable=True),
    sa.Column('redacted_payload', types.JsonType, nullable=True),
    sa.Column('redacted_response', types.JsonType, nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('http_status', sa.Integer(), nullable=True),
    sa.Column('attempts', sa.Integer(), nullable=False),
    sa.Column('duration_ms', sa.Integer(), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_sync_audit_appointment', 'sync_audit_log', ['appointment_id', 'created_at'], unique=False)
    op.create_index('idx_sync_audit_patient', 'sync_audit_log', ['patient_id', 'created_at'], unique=False)
    op.create_index('idx_sync_audit_action_status', 'sync_audit_log', ['action', 'status', 'created_at'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('sync_audit_log')
    op.drop_table('idempotency_records')
    op.drop_table('appointments')
    op.drop_table('availability_exceptions')
    op.drop_table('availability_rules')
    op.drop_index('uq_patients_strong_identity', table_name='patients')
    op.drop_table('patients')
    op.drop_table('payers')
    op.drop_table('providers')
