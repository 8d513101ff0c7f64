"""SQLAlchemy models for the validation tables."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from factcheck.core.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ValidationSession(Base):
    """One verification run over a converted document.

    Created on conversion request; mutated by the reconstructor
    (markdown/structure), the risk calculator (counters/score) and status
    transitions. Terminal sessions are immutable to claim edits.
    """

    __tablename__ = "validation_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    chatbot_id: Mapped[str] = mapped_column(String(255), nullable=False)
    document_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    original_text: Mapped[str] = mapped_column(
        Text, nullable=False,
        comment="Source text as received; never modified after insert"
    )
    reconstructed_markdown: Mapped[str | None] = mapped_column(Text, nullable=True)
    structure_json: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True,
        comment="Section arena: {title, nodes: [{id, title, level, startLine, endLine, parentId}]}"
    )
    truncation_json: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True,
        comment="Truncation accounting of the reconstruction input"
    )

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending"
    )  # pending | analyzing | extracting_claims | verifying | ready_for_review | reviewing | approved | rejected | expired | failed
    current_step: Mapped[str | None] = mapped_column(String(32), nullable=True)
    completed_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    pipeline_notes: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=list,
        comment="Reasons recorded by stages that completed in degraded mode"
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    risk_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_claims: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    supported_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contradicted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_found_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    high_risk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    generated_pages_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utc_now, server_default=func.now(),
        onupdate=_utc_now, nullable=False
    )
    expires_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Relationships
    claims: Mapped[list["Claim"]] = relationship(
        "Claim", back_populates="session", cascade="all, delete-orphan",
        order_by="Claim.sort_order"
    )

    __table_args__ = (
        Index("ix_validation_sessions_tenant_status", "tenant_id", "status"),
        Index("ix_validation_sessions_status_updated", "status", "updated_at"),
        {"comment": "Human-in-the-loop verification sessions"},
    )


class Claim(Base):
    """A checkable factual assertion extracted from the reconstructed markdown."""

    __tablename__ = "claims"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("validation_sessions.id", ondelete="CASCADE"), nullable=False
    )

    claim_text: Mapped[str] = mapped_column(Text, nullable=False)
    claim_type: Mapped[str] = mapped_column(
        String(16), nullable=False
    )  # numeric | contact | date | text | list | table
    reconstructed_location: Mapped[dict] = mapped_column(
        JSONType, nullable=False,
        comment="{startLine, endLine, startChar, endChar} in the reconstructed markdown"
    )
    risk_level: Mapped[str] = mapped_column(String(8), nullable=False, default="low")

    verdict: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending"
    )  # pending | supported | contradicted | not_found
    verification_level: Mapped[str | None] = mapped_column(
        String(8), nullable=True,
        comment="regex < llm < human; never regresses"
    )
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    verification_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    suspicion_type: Mapped[str | None] = mapped_column(
        String(16), nullable=True
    )  # added | missing | moved | contradicted | none

    human_verdict: Mapped[str | None] = mapped_column(
        String(16), nullable=True
    )  # approved | rejected | modified | skipped
    human_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    corrected_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utc_now, server_default=func.now(), nullable=False
    )

    # Relationships
    session: Mapped["ValidationSession"] = relationship("ValidationSession", back_populates="claims")
    source_spans: Mapped[list["SourceSpan"]] = relationship(
        "SourceSpan", back_populates="claim", cascade="all, delete-orphan", lazy="selectin"
    )

    __table_args__ = (
        Index("ix_claims_session_sort", "session_id", "sort_order"),
        Index("ix_claims_session_verdict", "session_id", "verdict"),
    )


class SourceSpan(Base):
    """Evidence located in the original text for a claim."""

    __tablename__ = "source_spans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    claim_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("claims.id", ondelete="CASCADE"), nullable=False
    )
    source_text: Mapped[str] = mapped_column(Text, nullable=False)
    start_char: Mapped[int] = mapped_column(
        Integer, nullable=False,
        comment="Offset into the original text (not the markdown)"
    )
    end_char: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    match_score: Mapped[float] = mapped_column(Float, nullable=False)
    match_method: Mapped[str] = mapped_column(
        String(16), nullable=False
    )  # exact | fuzzy | semantic
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utc_now, server_default=func.now(), nullable=False
    )

    claim: Mapped["Claim"] = relationship("Claim", back_populates="source_spans")

    __table_args__ = (
        Index("ix_source_spans_claim", "claim_id"),
    )


class ValidationAuditLog(Base):
    """Append-only record of every human or system action on a session."""

    __tablename__ = "validation_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("validation_sessions.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    target_type: Mapped[str | None] = mapped_column(
        String(16), nullable=True
    )  # session | claim | markdown
    target_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    previous_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    extra_metadata: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=_utc_now, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_validation_audit_logs_session_created", "session_id", "created_at"),
        {"comment": "Compliance record of review actions; insert and read only"},
    )
