"""Session risk scoring.

riskScore = (contradicted*3 + not_found*2 + high_risk*1.5) / (total*3), clamped
to [0, 1]. ``high_risk`` counts high-risk claims that are not contradicted;
contradicted claims are always high risk and already carry the heaviest
weight.
"""

from dataclasses import asdict, dataclass
from typing import Iterable
from uuid import UUID

from factcheck.repositories.claim_repository import ClaimRepository
from factcheck.repositories.session_repository import SessionRepository
from factcheck.schemas.validation import RiskLevel, Verdict
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

CONTRADICTED_WEIGHT = 3.0
NOT_FOUND_WEIGHT = 2.0
HIGH_RISK_WEIGHT = 1.5


@dataclass(frozen=True)
class SessionStatistics:
    risk_score: float
    total_claims: int
    supported_count: int
    contradicted_count: int
    not_found_count: int
    high_risk_count: int

    def as_columns(self) -> dict:
        return asdict(self)


def effective_risk(verdict: str, risk_level: str, escalate_not_found: bool = False) -> str:
    """Risk level after verdict-based escalation."""
    if verdict == Verdict.CONTRADICTED.value:
        return RiskLevel.HIGH.value
    if escalate_not_found and verdict == Verdict.NOT_FOUND.value:
        return RiskLevel.HIGH.value
    return risk_level


def compute_statistics(claims: Iterable, escalate_not_found: bool = False) -> SessionStatistics:
    """Compute counters and score from the full claim set.

    Args:
        claims: Objects with ``verdict`` and ``risk_level`` string attributes
        escalate_not_found: Treat not_found claims as high risk

    Returns:
        SessionStatistics; score is 0 when there are no claims
    """
    total = supported = contradicted = not_found = high_risk = 0
    for claim in claims:
        total += 1
        if claim.verdict == Verdict.SUPPORTED.value:
            supported += 1
        elif claim.verdict == Verdict.CONTRADICTED.value:
            contradicted += 1
            continue
        elif claim.verdict == Verdict.NOT_FOUND.value:
            not_found += 1
        if effective_risk(claim.verdict, claim.risk_level, escalate_not_found) == RiskLevel.HIGH.value:
            high_risk += 1

    if total == 0:
        score = 0.0
    else:
        raw = (
            contradicted * CONTRADICTED_WEIGHT
            + not_found * NOT_FOUND_WEIGHT
            + high_risk * HIGH_RISK_WEIGHT
        ) / (total * CONTRADICTED_WEIGHT)
        score = round(min(1.0, max(0.0, raw)), 4)

    return SessionStatistics(
        risk_score=score,
        total_claims=total,
        supported_count=supported,
        contradicted_count=contradicted,
        not_found_count=not_found,
        high_risk_count=high_risk,
    )


class RiskCalculator:
    """Single writer of session statistics."""

    def __init__(
        self,
        claim_repo: ClaimRepository,
        session_repo: SessionRepository,
        escalate_not_found: bool = False,
    ):
        self.claim_repo = claim_repo
        self.session_repo = session_repo
        self.escalate_not_found = escalate_not_found

    async def recalculate(self, session_id: UUID) -> SessionStatistics:
        """Escalate contradicted claims, recompute counters and persist them in one UPDATE."""
        escalated = await self.claim_repo.escalate_contradicted(session_id)
        claims = await self.claim_repo.get_by_session(session_id)
        stats = compute_statistics(claims, self.escalate_not_found)
        await self.session_repo.update_statistics(session_id, **stats.as_columns())

        LOGGER.info(
            f"[RISK] score={stats.risk_score} total={stats.total_claims} "
            f"contradicted={stats.contradicted_count} not_found={stats.not_found_count} "
            f"high_risk={stats.high_risk_count} escalated={escalated}",
            extra={"session_id": str(session_id)}
        )
        return stats
