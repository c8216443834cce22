"""Test schedules — Temporal Schedule construction and prefix-scoped listing."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from temporalio.client import ScheduleAlreadyRunningError, ScheduleOverlapPolicy, ScheduleState

import config
from conftest import FakeTemporalClient
from workflows import schedules


def test_build_schedule():
    schedule = schedules.build_schedule("nightly", "0 3 * * *", "sweep", 25)

    assert schedule.action.workflow == "ScheduledPipelineWorkflow"
    assert schedule.action.args == ["sweep", 25]
    assert schedule.action.id == "scheduled-nightly"
    assert schedule.action.task_queue == config.TEMPORAL_TASK_QUEUE
    assert schedule.spec.cron_expressions == ["0 3 * * *"]
    assert schedule.policy.overlap == ScheduleOverlapPolicy.SKIP
    assert schedule.state.note == "sweep limit=25 cron=0 3 * * *"


def test_create_uses_prefixed_id():
    client = FakeTemporalClient()
    created = asyncio.run(schedules.create_schedule(client, "hourly", "0 * * * *", "run", 1))
    assert created["schedule_id"] == "recipe-pipeline-hourly"
    assert list(client.schedules) == ["recipe-pipeline-hourly"]

    with pytest.raises(ScheduleAlreadyRunningError):
        asyncio.run(schedules.create_schedule(client, "hourly", "0 * * * *", "run", 1))


def test_list_only_returns_pipeline_schedules():
    client = FakeTemporalClient()
    client.schedules["nightly-backup"] = SimpleNamespace(state=ScheduleState(note="backup"))
    asyncio.run(schedules.create_schedule(client, "hourly", "0 * * * *", "run", 1))

    listed = asyncio.run(schedules.list_schedules(client))

    assert [s["name"] for s in listed] == ["hourly"]
    assert listed[0]["paused"] is False
