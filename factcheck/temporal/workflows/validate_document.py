"""Workflow running the validation pipeline stage by stage.

Activities are referenced by name so the workflow module imports nothing
non-deterministic. Stage errors that retrying cannot fix (bad state,
missing session, unusable stage output) are non-retryable; once retries are
exhausted the session is marked failed.
"""

from datetime import timedelta
from typing import Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

STAGES = ("reconstruct", "extract_claims", "verify_regex", "verify_llm")

NON_RETRYABLE_ERRORS = [
    "StateTransitionError",
    "SessionNotFoundError",
    "PipelineError",
    "ReconstructionError",
    "ClaimExtractionError",
    "VerificationError",
]


@workflow.defn
class ValidateDocumentWorkflow:
    """Drives one validation session from pending to ready_for_review."""

    def __init__(self):
        self._status = "initialized"
        self._current_stage: Optional[str] = None
        self._completed = 0
        self._notes = []

    @workflow.query
    def get_status(self) -> dict:
        """Query handler for real-time status updates."""
        return {
            "status": self._status,
            "current_stage": self._current_stage,
            "completed_stages": self._completed,
            "total_stages": len(STAGES),
            "notes": list(self._notes),
        }

    @workflow.run
    async def run(self, session_id: str) -> dict:
        """
        Execute every validation stage for a session.

        Args:
            session_id: UUID of the validation session

        Returns:
            Dictionary with the final status and degraded-stage notes
        """
        workflow.logger.info(f"Starting validation: {session_id}")
        self._status = "processing"

        for stage in STAGES:
            self._current_stage = stage
            try:
                result = await workflow.execute_activity(
                    "run_validation_stage",
                    args=[session_id, stage],
                    start_to_close_timeout=timedelta(minutes=15),
                    heartbeat_timeout=timedelta(minutes=5),
                    retry_policy=RetryPolicy(
                        initial_interval=timedelta(seconds=5),
                        maximum_attempts=3,
                        non_retryable_error_types=NON_RETRYABLE_ERRORS,
                    ),
                )
            except ActivityError as e:
                reason = f"{stage}: {e.cause or e}"
                return await self._fail(session_id, reason)

            if result["status"] == "failed":
                return await self._fail(session_id, f"{stage}: {result['reason']}")
            if result["status"] == "degraded":
                self._notes.append(f"{stage}: {result['reason']}")
            self._completed += 1

        self._status = "ready_for_review"
        self._current_stage = None
        workflow.logger.info(f"Validation ready for review: {session_id}")
        return {"session_id": session_id, "status": self._status, "notes": list(self._notes)}

    async def _fail(self, session_id: str, reason: str) -> dict:
        workflow.logger.error(f"Validation failed for {session_id}: {reason}")
        await workflow.execute_activity(
            "mark_validation_failed",
            args=[session_id, reason],
            start_to_close_timeout=timedelta(minutes=1),
            retry_policy=RetryPolicy(maximum_attempts=5),
        )
        self._status = "failed"
        return {"session_id": session_id, "status": self._status, "reason": reason, "notes": list(self._notes)}
