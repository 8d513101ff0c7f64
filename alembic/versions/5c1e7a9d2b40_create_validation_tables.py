"""create_validation_tables

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-18 09:12:41.204533

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '5c1e7a9d2b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'validation_sessions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('chatbot_id', sa.String(length=255), nullable=False),
        sa.Column('document_id', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('original_text', sa.Text(), nullable=False, comment='Source text as received; never modified after insert'),
        sa.Column('reconstructed_markdown', sa.Text(), nullable=True),
        sa.Column('structure_json', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Section arena: {title, nodes: [{id, title, level, startLine, endLine, parentId}]}'),
        sa.Column('truncation_json', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Truncation accounting of the reconstruction input'),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('current_step', sa.String(length=32), nullable=True),
        sa.Column('completed_steps', sa.Integer(), nullable=False),
        sa.Column('total_steps', sa.Integer(), nullable=False),
        sa.Column('pipeline_notes', postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment='Reasons recorded by stages that completed in degraded mode'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('risk_score', sa.Float(), nullable=False),
        sa.Column('total_claims', sa.Integer(), nullable=False),
        sa.Column('supported_count', sa.Integer(), nullable=False),
        sa.Column('contradicted_count', sa.Integer(), nullable=False),
        sa.Column('not_found_count', sa.Integer(), nullable=False),
        sa.Column('high_risk_count', sa.Integer(), nullable=False),
        sa.Column('reviewed_by', sa.String(length=255), nullable=True),
        sa.Column('reviewed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('review_note', sa.Text(), nullable=True),
        sa.Column('generated_pages_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        comment='Human-in-the-loop verification sessions'
    )
    op.create_index('ix_validation_sessions_tenant_status', 'validation_sessions', ['tenant_id', 'status'], unique=False)
    op.create_index('ix_validation_sessions_status_updated', 'validation_sessions', ['status', 'updated_at'], unique=False)

    op.create_table(
        'claims',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('session_id', sa.Uuid(), nullable=False),
        sa.Column('claim_text', sa.Text(), nullable=False),
        sa.Column('claim_type', sa.String(length=16), nullable=False),
        sa.Column('reconstructed_location', postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment='{startLine, endLine, startChar, endChar} in the reconstructed markdown'),
        sa.Column('risk_level', sa.String(length=8), nullable=False),
        sa.Column('verdict', sa.String(length=16), nullable=False),
        sa.Column('verification_level', sa.String(length=8), nullable=True, comment='regex < llm < human; never regresses'),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('verification_detail', sa.Text(), nullable=True),
        sa.Column('suspicion_type', sa.String(length=16), nullable=True),
        sa.Column('human_verdict', sa.String(length=16), nullable=True),
        sa.Column('human_note', sa.Text(), nullable=True),
        sa.Column('corrected_text', sa.Text(), nullable=True),
        sa.Column('reviewed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['validation_sessions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_claims_session_sort', 'claims', ['session_id', 'sort_order'], unique=False)
    op.create_index('ix_claims_session_verdict', 'claims', ['session_id', 'verdict'], unique=False)

    op.create_table(
        'source_spans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('claim_id', sa.Uuid(), nullable=False),
        sa.Column('source_text', sa.Text(), nullable=False),
        sa.Column('start_char', sa.Integer(), nullable=False, comment='Offset into the original text (not the markdown)'),
        sa.Column('end_char', sa.Integer(), nullable=False),
        sa.Column('page_number', sa.Integer(), nullable=True),
        sa.Column('match_score', sa.Float(), nullable=False),
        sa.Column('match_method', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['claim_id'], ['claims.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_source_spans_claim', 'source_spans', ['claim_id'], unique=False)

    op.create_table(
        'validation_audit_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('session_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('target_type', sa.String(length=16), nullable=True),
        sa.Column('target_id', sa.String(length=255), nullable=True),
        sa.Column('previous_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['validation_sessions.id']),
        sa.PrimaryKeyConstraint('id'),
        comment='Compliance record of review actions; insert and read only'
    )
    op.create_index('ix_validation_audit_logs_session_created', 'validation_audit_logs', ['session_id', 'created_at'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_validation_audit_logs_session_created', table_name='validation_audit_logs')
    op.drop_table('validation_audit_logs')
    op.drop_index('ix_source_spans_claim', table_name='source_spans')
    op.drop_table('source_spans')
    op.drop_index('ix_claims_session_verdict', table_name='claims')
    op.drop_index('ix_claims_session_sort', table_name='claims')
    op.drop_table('claims')
    op.drop_index('ix_validation_sessions_status_updated', table_name='validation_sessions')
    op.drop_index('ix_validation_sessions_tenant_status', table_name='validation_sessions')
    op.drop_table('validation_sessions')
