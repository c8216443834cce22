"""
Cron schedules for unattended pipeline runs, kept as Temporal Schedules.

Each schedule starts ``ScheduledPipelineWorkflow`` on its cron
expression. Overlapping ticks are skipped, so a slow run is never
doubled up. Schedule ids carry a fixed prefix so listing only returns
this service's schedules.
"""

from __future__ import annotations

import logging

from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleListDescription,
    ScheduleOverlapPolicy,
    SchedulePolicy,
    ScheduleSpec,
    ScheduleState,
)

import config
from workflows.pipeline import ScheduledPipelineWorkflow

log = logging.getLogger(__name__)

SCHEDULE_PREFIX = "recipe-pipeline-"


def schedule_id(name: str) -> str:
    return f"{SCHEDULE_PREFIX}{name}"


def build_schedule(name: str, cron: str, action: str, limit: int) -> Schedule:
    return Schedule(
        action=ScheduleActionStartWorkflow(
            ScheduledPipelineWorkflow.run,
            args=[action, limit],
            id=f"scheduled-{name}",
            task_queue=config.TEMPORAL_TASK_QUEUE,
        ),
        spec=ScheduleSpec(cron_expressions=[cron]),
        policy=SchedulePolicy(overlap=ScheduleOverlapPolicy.SKIP),
        state=ScheduleState(note=f"{action} limit={limit} cron={cron}"),
    )


async def create_schedule(client: Client, name: str, cron: str, action: str, limit: int) -> dict:
    await client.create_schedule(schedule_id(name), build_schedule(name, cron, action, limit))
    log.info("Scheduled pipeline %s: %s every '%s'", name, action, cron)
    return {"name": name, "schedule_id": schedule_id(name), "cron": cron, "action": action, "limit": limit}


def _describe(listed: ScheduleListDescription) -> dict:
    state = listed.schedule.state if listed.schedule else None
    info = listed.info
    return {
        "name": listed.id[len(SCHEDULE_PREFIX):],
        "schedule_id": listed.id,
        "note": state.note if state else None,
        "paused": state.paused if state else False,
        "next_runs": [t.isoformat() for t in info.next_action_times] if info else [],
    }


async def list_schedules(client: Client) -> list[dict]:
    schedules = []
    async for listed in await client.list_schedules():
        if listed.id.startswith(SCHEDULE_PREFIX):
            schedules.append(_describe(listed))
    return schedules


async def delete_schedule(client: Client, name: str) -> None:
    await client.get_schedule_handle(schedule_id(name)).delete()
    log.info("Removed scheduled pipeline %s", name)
