"""
Temporal Workflows: Recipe Pipeline and Scheduled Pipeline

``RecipePipelineWorkflow`` runs one ``advance`` of a pipeline entry as a
single activity. Its workflow id is ``advance-<entry_id>``, so Temporal
itself refuses a second concurrent advance of the same entry.

``ScheduledPipelineWorkflow`` is what a Temporal Schedule starts on each
tick: it advances the next pending entry or sweeps retriable ones.

Retry policy stays with the controller and the operator: activities are
attempted exactly once, and a blocked entry is a normal result.
"""

from __future__ import annotations

from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.advance import advance_entry, run_scheduled
    import config


def workflow_id(entry_id: str) -> str:
    return f"advance-{entry_id}"


@workflow.defn
class RecipePipelineWorkflow:

    @workflow.run
    async def run(self, entry_id: str, triggered_by: str = "manual") -> dict:
        workflow.logger.info("Advancing entry %s (%s)", entry_id, triggered_by)
        return await workflow.execute_activity(
            advance_entry,
            args=[entry_id, triggered_by],
            start_to_close_timeout=timedelta(seconds=config.ADVANCE_TIMEOUT_SEC),
            heartbeat_timeout=timedelta(seconds=config.HEARTBEAT_TIMEOUT_SEC),
            retry_policy=RetryPolicy(maximum_attempts=1),
        )


@workflow.defn
class ScheduledPipelineWorkflow:

    @workflow.run
    async def run(self, action: str, limit: int) -> dict:
        workflow.logger.info("Scheduled %s (limit %d)", action, limit)
        entries = limit if action == "sweep" else 1
        return await workflow.execute_activity(
            run_scheduled,
            args=[action, limit],
            start_to_close_timeout=timedelta(seconds=config.ADVANCE_TIMEOUT_SEC * entries),
            heartbeat_timeout=timedelta(seconds=config.HEARTBEAT_TIMEOUT_SEC),
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
