"""Periodic expiry sweep, meant to be started with a cron schedule."""

from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

EXPIRY_CRON_SCHEDULE = "*/15 * * * *"


@workflow.defn
class ExpireSessionsWorkflow:
    """Expires sessions past their TTL and sessions stuck in the pipeline."""

    @workflow.run
    async def run(self) -> dict:
        expired = await workflow.execute_activity(
            "expire_validation_sessions",
            start_to_close_timeout=timedelta(minutes=5),
            retry_policy=RetryPolicy(
                initial_interval=timedelta(seconds=10),
                maximum_attempts=3,
            ),
        )
        return {"expired": expired}
