"""Temporal worker for the validation pipeline.

This worker:
- Connects to the configured Temporal server
- Registers the validation and expiry workflows and their activities
- Makes sure the cron expiry sweep is scheduled
- Polls the validation task queue
"""

import asyncio

from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.worker import Worker

from factcheck.core.config import settings
from factcheck.temporal.activities.validation import (
    expire_validation_sessions,
    mark_validation_failed,
    run_validation_stage,
)
from factcheck.temporal.workflows.expire_sessions import EXPIRY_CRON_SCHEDULE, ExpireSessionsWorkflow
from factcheck.temporal.workflows.validate_document import ValidateDocumentWorkflow
from factcheck.utils.logging import get_logger

logger = get_logger(__name__)

EXPIRY_WORKFLOW_ID = "expire-validation-sessions"
MAX_CONCURRENT_ACTIVITIES = 5
MAX_CONCURRENT_WORKFLOW_TASKS = 10


async def ensure_expiry_schedule(client: Client) -> None:
    try:
        await client.start_workflow(
            ExpireSessionsWorkflow.run,
            id=EXPIRY_WORKFLOW_ID,
            task_queue=settings.temporal.task_queue,
            cron_schedule=EXPIRY_CRON_SCHEDULE,
        )
        logger.info(f"Scheduled expiry sweep ({EXPIRY_CRON_SCHEDULE})")
    except WorkflowAlreadyStartedError:
        logger.info("Expiry sweep already scheduled")


async def main():
    """Start the Temporal worker."""
    target_host = f"{settings.temporal.host}:{settings.temporal.port}"
    logger.info(f"Connecting to Temporal server at {target_host}")

    client = await Client.connect(target_host, namespace=settings.temporal.namespace)
    logger.info("Successfully connected to Temporal server")

    await ensure_expiry_schedule(client)

    worker = Worker(
        client,
        task_queue=settings.temporal.task_queue,
        workflows=[ValidateDocumentWorkflow, ExpireSessionsWorkflow],
        activities=[run_validation_stage, mark_validation_failed, expire_validation_sessions],
        max_concurrent_activities=MAX_CONCURRENT_ACTIVITIES,
        max_concurrent_workflow_tasks=MAX_CONCURRENT_WORKFLOW_TASKS,
    )

    logger.info(
        f"Worker polling {settings.temporal.task_queue} "
        f"(activities={MAX_CONCURRENT_ACTIVITIES}, workflow tasks={MAX_CONCURRENT_WORKFLOW_TASKS})"
    )
    await worker.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        raise
