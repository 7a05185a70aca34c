"""Initial customs schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-01-05 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


DECLARATION_TYPES = ('PEB', 'PIB')
DECLARATION_STATUSES = (
    'DRAFT', 'SUBMITTED', 'UNDER_REVIEW', 'APPROVED', 'REJECTED', 'LOCKED',
    'SENT_TO_GATEWAY', 'GATEWAY_ACCEPTED', 'GATEWAY_REJECTED',
)
AUDIT_ACTIONS = (
    'CREATE', 'UPDATE', 'SUBMIT', 'APPROVE', 'REJECT', 'SEND_GATEWAY',
    'RECEIVE_RESPONSE', 'LOCK', 'UNLOCK', 'EXPORT', 'PRINT', 'LOGIN', 'LOGOUT',
)


def _enum(name: str, values) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


def upgrade() -> None:
    # Create enum types
    bind = op.get_bind()
    postgresql.ENUM(*DECLARATION_TYPES, name='declarationtype').create(bind, checkfirst=True)
    postgresql.ENUM(*DECLARATION_STATUSES, name='declarationstatus').create(bind, checkfirst=True)
    postgresql.ENUM('LOCAL', 'CEISA', name='declarationsource').create(bind, checkfirst=True)
    postgresql.ENUM(
        'INVOICE', 'PACKING_LIST', 'AIR_WAYBILL', 'BILL_OF_LADING', 'OTHER', name='documentcategory'
    ).create(bind, checkfirst=True)
    postgresql.ENUM('PENDING', 'ACCEPTED', 'FAILED', name='queuestatus').create(bind, checkfirst=True)
    postgresql.ENUM('ACCEPTED', 'REJECTED', name='gatewayoutcome').create(bind, checkfirst=True)
    postgresql.ENUM(*AUDIT_ACTIONS, name='auditaction').create(bind, checkfirst=True)

    # Create declarations table
    op.create_table(
        'declarations',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('declaration_type', _enum('declarationtype', DECLARATION_TYPES), nullable=False),
        sa.Column('nomor_aju', sa.String(32), nullable=True),
        sa.Column('registration_number', sa.String(32), nullable=True),
        sa.Column('registration_date', sa.Date(), nullable=True),
        sa.Column('trader_npwp', sa.String(32), nullable=True),
        sa.Column('trader_name', sa.String(255), nullable=True),
        sa.Column('importer_api_number', sa.String(32), nullable=True),
        sa.Column('counterparty_name', sa.String(255), nullable=True),
        sa.Column('counterparty_country', sa.String(2), nullable=True),
        sa.Column('customs_office_code', sa.String(10), nullable=True),
        sa.Column('transport_mode', sa.String(10), nullable=True),
        sa.Column('incoterm_code', sa.String(3), nullable=True),
        sa.Column('currency_code', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('exchange_rate', sa.Numeric(18, 6), nullable=False, server_default='1'),
        sa.Column('total_value', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('freight_value', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('insurance_value', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('total_bm', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('total_ppn', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('total_pph', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('total_tax', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('status', _enum('declarationstatus', DECLARATION_STATUSES), nullable=False),
        sa.Column('source', _enum('declarationsource', ('LOCAL', 'CEISA')), nullable=False),
        sa.Column('xml_content', sa.Text(), nullable=True),
        sa.Column('xml_hash', sa.String(64), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('gateway_errors', postgresql.JSONB(), nullable=True),
        sa.Column('remote_payload', postgresql.JSONB(), nullable=True),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('nomor_aju', name='uq_declarations_nomor_aju'),
    )
    op.create_index('ix_declarations_status', 'declarations', ['status'])
    op.create_index('ix_declarations_type_status', 'declarations', ['declaration_type', 'status'])

    # Create declaration_items table
    op.create_table(
        'declaration_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('declaration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('item_number', sa.Integer(), nullable=False),
        sa.Column('hs_code', sa.String(10), nullable=False),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('quantity_unit', sa.String(10), nullable=True),
        sa.Column('net_weight', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('gross_weight', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('unit_price', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('line_value', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('country_of_origin', sa.String(2), nullable=True),
        sa.Column('bm_rate', sa.Numeric(7, 4), nullable=False, server_default='0'),
        sa.Column('ppn_rate', sa.Numeric(7, 4), nullable=False, server_default='11'),
        sa.Column('pph_rate', sa.Numeric(7, 4), nullable=False, server_default='0'),
        sa.Column('freight_share', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('insurance_share', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('cif_value', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('cif_idr', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('bm_amount', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('ppn_amount', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('pph_amount', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('total_tax', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['declaration_id'], ['declarations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_declaration_items_declaration_id', 'declaration_items', ['declaration_id'])

    # Create supporting_documents table
    op.create_table(
        'supporting_documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('declaration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('category', _enum(
            'documentcategory', ('INVOICE', 'PACKING_LIST', 'AIR_WAYBILL', 'BILL_OF_LADING', 'OTHER')
        ), nullable=False),
        sa.Column('reference_number', sa.String(64), nullable=False),
        sa.Column('document_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['declaration_id'], ['declarations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )

    # Create edi_queue_items table
    op.create_table(
        'edi_queue_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('declaration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('document_type', _enum('declarationtype', DECLARATION_TYPES), nullable=False),
        sa.Column('status', _enum('queuestatus', ('PENDING', 'ACCEPTED', 'FAILED')), nullable=False),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('in_flight', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('retriable', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_error', postgresql.JSONB(), nullable=True),
        sa.Column('gateway_reference', sa.String(64), nullable=True),
        sa.Column('xml_hash', sa.String(64), nullable=True),
        sa.Column('enqueued_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['declaration_id'], ['declarations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_edi_queue_items_status', 'edi_queue_items', ['status'])
    # At most one pending transmission per declaration
    op.create_index(
        'uq_edi_queue_items_one_pending',
        'edi_queue_items',
        ['declaration_id'],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    # Create edi_incoming_messages table
    op.create_table(
        'edi_incoming_messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('declaration_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('document_type', _enum('declarationtype', DECLARATION_TYPES), nullable=False),
        sa.Column('document_number', sa.String(32), nullable=False),
        sa.Column('status', _enum('gatewayoutcome', ('ACCEPTED', 'REJECTED')), nullable=False),
        sa.Column('response_code', sa.String(20), nullable=True),
        sa.Column('response_message', sa.Text(), nullable=True),
        sa.Column('registration_number', sa.String(32), nullable=True),
        sa.Column('registration_date', sa.Date(), nullable=True),
        sa.Column('errors', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('raw_payload', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['declaration_id'], ['declarations.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_edi_incoming_document_number', 'edi_incoming_messages', ['document_number'])

    # Create edi_archive_entries table
    op.create_table(
        'edi_archive_entries',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('declaration_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('document_type', _enum('declarationtype', DECLARATION_TYPES), nullable=False),
        sa.Column('document_number', sa.String(32), nullable=False),
        sa.Column('status', _enum('gatewayoutcome', ('ACCEPTED', 'REJECTED')), nullable=False),
        sa.Column('response_code', sa.String(20), nullable=True),
        sa.Column('response_message', sa.Text(), nullable=True),
        sa.Column('registration_number', sa.String(32), nullable=True),
        sa.Column('registration_date', sa.Date(), nullable=True),
        sa.Column('errors', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('raw_payload', sa.Text(), nullable=True),
        sa.Column('payload_hash', sa.String(64), nullable=True),
        sa.Column('archive_path', sa.String(255), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('archived_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['declaration_id'], ['declarations.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', name='uq_edi_archive_entries_message_id'),
    )
    op.create_index('ix_edi_archive_document_number', 'edi_archive_entries', ['document_number'])
    op.create_index('ix_edi_archive_type_archived', 'edi_archive_entries', ['document_type', 'archived_at'])

    # Create audit_log table
    op.create_table(
        'audit_log',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('entity_number', sa.String(32), nullable=True),
        sa.Column('action', _enum('auditaction', AUDIT_ACTIONS), nullable=False),
        sa.Column('actor_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('actor_email', sa.String(255), nullable=True),
        sa.Column('actor_role', sa.String(20), nullable=False),
        sa.Column('changes', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('document_hash', sa.String(64), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_log_entity', 'audit_log', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_log_created_at', 'audit_log', ['created_at'])

    # The audit trail is append-only at the database level too
    op.execute("""
        CREATE OR REPLACE FUNCTION audit_log_refuse_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_log rows are immutable';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER audit_log_immutable
        BEFORE UPDATE OR DELETE ON audit_log
        FOR EACH ROW EXECUTE FUNCTION audit_log_refuse_change();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS audit_log_immutable ON audit_log")
    op.execute("DROP FUNCTION IF EXISTS audit_log_refuse_change()")
    op.drop_table('audit_log')
    op.drop_table('edi_archive_entries')
    op.drop_table('edi_incoming_messages')
    op.drop_table('edi_queue_items')
    op.drop_table('supporting_documents')
    op.drop_table('declaration_items')
    op.drop_table('declarations')

    for name in (
        'auditaction', 'gatewayoutcome', 'queuestatus', 'documentcategory',
        'declarationsource', 'declarationstatus', 'declarationtype',
    ):
        op.execute(f"DROP TYPE IF EXISTS {name}")
