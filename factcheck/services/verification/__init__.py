"""Verification stages: reconstruction, claim extraction, verification, risk and audit."""

from factcheck.services.verification.audit_logger import AuditLogger, RequestMeta
from factcheck.services.verification.claim_extractor import ClaimExtractor
from factcheck.services.verification.llm_verifier import LLMVerifier
from factcheck.services.verification.markdown_reconstructor import MarkdownReconstructor
from factcheck.services.verification.regex_verifier import RegexVerifier
from factcheck.services.verification.risk_calculator import RiskCalculator

__all__ = [
    "AuditLogger",
    "RequestMeta",
    "ClaimExtractor",
    "LLMVerifier",
    "MarkdownReconstructor",
    "RegexVerifier",
    "RiskCalculator",
]
