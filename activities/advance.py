"""
Activities: Advance Entry and Scheduled Run — controller runs executed by the Temporal worker.

Both heartbeat through the controller every time it renews an entry
claim, i.e. before each stage and each image slot.
"""

from __future__ import annotations

import logging

from temporalio import activity
from temporalio.exceptions import ApplicationError

from features.entries import db as entry_db
from models.errors import EntryBusyError, EntryNotFound
from models.schemas import TriggerSource
from workflows.controller import PipelineController
from workflows.retry import run_next, sweep

log = logging.getLogger(__name__)

SCHEDULE_ACTIONS = ("run", "sweep")

_controller: PipelineController | None = None


def _heartbeat(detail: str) -> None:
    if activity.in_activity():
        activity.heartbeat(detail)


def get_controller() -> PipelineController:
    global _controller
    if _controller is None:
        _controller = PipelineController(entry_db, heartbeat=_heartbeat)
    return _controller


@activity.defn
def advance_entry(entry_id: str, triggered_by: str = TriggerSource.MANUAL.value) -> dict:
    """Advance one entry and return the outcome as a dict."""
    log.info("Activity advance_entry started for %s (%s)", entry_id, triggered_by)
    try:
        outcome = get_controller().advance(entry_id, triggered_by=TriggerSource(triggered_by))
    except EntryNotFound as e:
        raise ApplicationError(str(e), type="EntryNotFound", non_retryable=True) from e
    except EntryBusyError as e:
        raise ApplicationError(str(e), type="EntryBusy", non_retryable=True) from e
    return outcome.to_dict()


@activity.defn
def run_scheduled(action: str, limit: int) -> dict:
    """One scheduled tick: advance the next pending entry, or sweep retriable ones."""
    log.info("Scheduled %s started (limit %d)", action, limit)
    if action not in SCHEDULE_ACTIONS:
        raise ApplicationError(f"Unknown schedule action: {action}", type="BadScheduleAction", non_retryable=True)
    controller = get_controller()
    if action == "sweep":
        results = sweep(controller, limit=limit, triggered_by=TriggerSource.SCHEDULE)
    else:
        results = [run_next(controller, triggered_by=TriggerSource.SCHEDULE)]
    return {"action": action, "results": results, "count": len(results)}
