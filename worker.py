"""
Temporal Worker — registers the pipeline workflows and activities, then polls for tasks.

Usage:
    python worker.py
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from temporalio.client import Client
from temporalio.worker import Worker

import config
from activities.advance import advance_entry, run_scheduled
from features.entries import db as entry_db
from workflows.pipeline import RecipePipelineWorkflow, ScheduledPipelineWorkflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


async def main():
    entry_db.init_db()
    log.info("Postgres database initialized")

    log.info("Connecting to Temporal at %s", config.TEMPORAL_HOST)
    client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)

    log.info("Starting worker on queue: %s (%d threads)",
             config.TEMPORAL_TASK_QUEUE, config.WORKER_CONCURRENCY)
    with ThreadPoolExecutor(max_workers=config.WORKER_CONCURRENCY) as executor:
        worker = Worker(
            client,
            task_queue=config.TEMPORAL_TASK_QUEUE,
            workflows=[RecipePipelineWorkflow, ScheduledPipelineWorkflow],
            activities=[advance_entry, run_scheduled],
            activity_executor=executor,
            max_concurrent_activities=config.WORKER_CONCURRENCY,
        )
        log.info("Worker ready — listening for tasks")
        await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
