"""Validation schemas for sessions, claims, evidence and review actions.

Enumerations mirror the string values persisted in the database. Models with
camelCase aliases describe JSON that is stored in columns or exchanged with
the generation capability; ``populate_by_name`` lets code build them with
snake_case names.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ValidationStatus(str, Enum):
    """Session lifecycle states."""

    PENDING = "pending"
    ANALYZING = "analyzing"
    EXTRACTING_CLAIMS = "extracting_claims"
    VERIFYING = "verifying"
    READY_FOR_REVIEW = "ready_for_review"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"


class ClaimType(str, Enum):
    NUMERIC = "numeric"
    CONTACT = "contact"
    DATE = "date"
    TEXT = "text"
    LIST = "list"
    TABLE = "table"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Verdict(str, Enum):
    PENDING = "pending"
    SUPPORTED = "supported"
    CONTRADICTED = "contradicted"
    NOT_FOUND = "not_found"


class VerificationLevel(str, Enum):
    """Which verifier produced the current verdict. Ordered regex < llm < human."""

    REGEX = "regex"
    LLM = "llm"
    HUMAN = "human"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def levels_at_or_below(self) -> List["VerificationLevel"]:
        """Levels this level is allowed to overwrite."""
        return [level for level in VerificationLevel if level.rank <= self.rank]


_LEVEL_RANK = {
    VerificationLevel.REGEX: 1,
    VerificationLevel.LLM: 2,
    VerificationLevel.HUMAN: 3,
}


class SuspicionType(str, Enum):
    ADDED = "added"
    MISSING = "missing"
    MOVED = "moved"
    CONTRADICTED = "contradicted"
    NONE = "none"


class MatchMethod(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"


class HumanVerdict(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"
    SKIPPED = "skipped"


class SessionDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AuditAction(str, Enum):
    """Fixed set of audited actions."""

    SESSION_CREATED = "session_created"
    SESSION_VIEWED = "session_viewed"
    REVIEW_STARTED = "review_started"
    SESSION_APPROVED = "session_approved"
    SESSION_REJECTED = "session_rejected"
    SESSION_EXPIRED = "session_expired"
    SESSION_FAILED = "session_failed"
    CLAIM_APPROVED = "claim_approved"
    CLAIM_REJECTED = "claim_rejected"
    CLAIM_MODIFIED = "claim_modified"
    CLAIM_SKIPPED = "claim_skipped"
    MARKDOWN_EDITED = "markdown_edited"
    MASKING_APPLIED = "masking_applied"
    MASKING_REVEALED = "masking_revealed"
    EXPORT_GENERATED = "export_generated"


class TargetType(str, Enum):
    SESSION = "session"
    CLAIM = "claim"
    MARKDOWN = "markdown"


class MaskingType(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    RRN = "rrn"
    CARD = "card"
    ACCOUNT = "account"


# ============================================================================
# Stored JSON shapes
# ============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ReconstructedLocation(_CamelModel):
    """Position of a claim in the reconstructed markdown (1-based lines, absolute chars)."""

    start_line: int = Field(..., alias="startLine", ge=1)
    end_line: int = Field(..., alias="endLine", ge=1)
    start_char: int = Field(..., alias="startChar", ge=0)
    end_char: int = Field(..., alias="endChar", ge=0)


DEFAULT_LOCATION = ReconstructedLocation(start_line=1, end_line=1, start_char=0, end_char=0)


class SectionNode(_CamelModel):
    """One section in the flat structure arena."""

    id: str
    title: str
    level: int = Field(..., ge=1)
    start_line: int = Field(..., alias="startLine", ge=1)
    end_line: int = Field(..., alias="endLine", ge=1)
    parent_id: Optional[str] = Field(None, alias="parentId")


class DocumentStructure(_CamelModel):
    """Section arena; nodes appear in document order, parents before children."""

    title: Optional[str] = None
    nodes: List[SectionNode] = Field(default_factory=list)

    def get(self, node_id: str) -> Optional[SectionNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def children_of(self, node_id: Optional[str]) -> List[SectionNode]:
        return [node for node in self.nodes if node.parent_id == node_id]

    def roots(self) -> List[SectionNode]:
        return self.children_of(None)

    def to_tree(self) -> List[Dict[str, Any]]:
        """Render the arena as nested ``{id, title, level, startLine, endLine, children}``."""

        def render(node: SectionNode) -> Dict[str, Any]:
            return {
                "id": node.id,
                "title": node.title,
                "level": node.level,
                "startLine": node.start_line,
                "endLine": node.end_line,
                "children": [render(child) for child in self.children_of(node.id)],
            }

        return [render(root) for root in self.roots()]


class TruncationInfo(BaseModel):
    """Truncation accounting persisted with the session."""

    was_truncated: bool
    original_length: int
    processed_length: int
    lost_length: int
    lost_percentage: int
    context: str


# ============================================================================
# Generation capability response schemas
# ============================================================================


class StructureSectionItem(_CamelModel):
    """Section as returned by the structure-analysis prompt."""

    id: Optional[str] = None
    title: str
    level: int = Field(default=1, ge=1)
    start_line: int = Field(..., alias="startLine")
    end_line: int = Field(..., alias="endLine")
    children: List["StructureSectionItem"] = Field(default_factory=list)


class StructureResponse(_CamelModel):
    title: Optional[str] = None
    sections: List[StructureSectionItem] = Field(default_factory=list)


class LLMClaimItem(_CamelModel):
    """Claim as returned by the extraction prompt."""

    text: str = Field(..., min_length=1)
    type: ClaimType = ClaimType.TEXT
    line_number: Optional[int] = Field(None, alias="lineNumber")

    @field_validator("type", mode="before")
    @classmethod
    def unknown_type_is_text(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in {t.value for t in ClaimType}:
            return value.lower()
        return ClaimType.TEXT


class LLMSourceSpan(_CamelModel):
    text: str
    start_char: Optional[int] = Field(None, alias="startChar")
    end_char: Optional[int] = Field(None, alias="endChar")


class LLMVerificationItem(_CamelModel):
    """Per-claim result returned by the verification prompt."""

    claim_id: str = Field(..., alias="claimId")
    verdict: Verdict
    confidence: float = Field(..., ge=0.0, le=1.0)
    suspicion_type: Optional[SuspicionType] = Field(None, alias="suspicionType")
    source_span: Optional[LLMSourceSpan] = Field(None, alias="sourceSpan")
    explanation: str = ""

    @field_validator("suspicion_type", mode="before")
    @classmethod
    def unknown_suspicion_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in {s.value for s in SuspicionType}:
            return value.lower()
        return None

    @field_validator("verdict", mode="before")
    @classmethod
    def lowercase_verdict(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("verdict")
    @classmethod
    def verdict_is_final(cls, value: Verdict) -> Verdict:
        if value == Verdict.PENDING:
            raise ValueError("verification verdict cannot be pending")
        return value


# ============================================================================
# Pipeline value objects
# ============================================================================


class ExtractedClaim(BaseModel):
    """A claim produced by the extractor before it is persisted."""

    text: str
    claim_type: ClaimType
    location: ReconstructedLocation
    risk_level: RiskLevel


class PageDraft(BaseModel):
    """Knowledge-page draft handed to the external page-creation layer."""

    node_id: Optional[str] = None
    title: str
    content: str
    level: int = 1
    parent_id: Optional[str] = None
    sort_order: int = 0


# ============================================================================
# Request Schemas
# ============================================================================


class CreateSessionRequest(_CamelModel):
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    chatbot_id: str = Field(..., alias="chatbotId", min_length=1)
    document_id: Optional[str] = Field(None, alias="documentId")
    original_text: str = Field(..., alias="originalText")


class ClaimReviewRequest(_CamelModel):
    verdict: HumanVerdict
    replacement_text: Optional[str] = Field(None, alias="replacementText")
    note: Optional[str] = None


class MarkdownUpdateRequest(BaseModel):
    markdown: str


class SessionDecisionRequest(BaseModel):
    decision: SessionDecision
    reason: Optional[str] = None


# ============================================================================
# Response Schemas
# ============================================================================


class SourceSpanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_text: str
    start_char: int
    end_char: int
    page_number: Optional[int] = None
    match_score: float
    match_method: MatchMethod


class ClaimResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    claim_text: str
    claim_type: ClaimType
    reconstructed_location: Dict[str, int]
    risk_level: RiskLevel
    verdict: Verdict
    verification_level: Optional[VerificationLevel] = None
    confidence: Optional[float] = None
    verification_detail: Optional[str] = None
    suspicion_type: Optional[SuspicionType] = None
    human_verdict: Optional[HumanVerdict] = None
    human_note: Optional[str] = None
    corrected_text: Optional[str] = None
    sort_order: int
    source_spans: List[SourceSpanResponse] = Field(default_factory=list)


class SessionCounts(BaseModel):
    total: int = 0
    supported: int = 0
    contradicted: int = 0
    not_found: int = 0
    high_risk: int = 0


class SessionSnapshot(BaseModel):
    """Review-facing view of a session and its claims."""

    id: UUID
    tenant_id: str
    chatbot_id: str
    document_id: Optional[str] = None
    status: ValidationStatus
    risk_score: float
    counts: SessionCounts
    current_step: Optional[str] = None
    completed_steps: int = 0
    total_steps: int = 4
    pipeline_notes: List[str] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    original_text: str
    masked: bool = False
    masking_count: int = 0
    reconstructed_markdown: Optional[str] = None
    structure: Optional[List[Dict[str, Any]]] = None
    truncation: Optional[TruncationInfo] = None
    claims: List[ClaimResponse] = Field(default_factory=list)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None
    generated_pages_count: int = 0
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    session_id: UUID
    user_id: str
    action: AuditAction
    target_type: Optional[TargetType] = None
    target_id: Optional[str] = None
    previous_value: Optional[str] = None
    new_value: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="extra_metadata")
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class SessionDecisionResponse(BaseModel):
    session_id: UUID
    status: ValidationStatus
    pages: List[PageDraft] = Field(default_factory=list)
