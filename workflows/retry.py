"""
Retry triggers — manual retry, the automatic sweep and scheduled runs.

All of them call ``PipelineController.advance``; none has a code path of
its own for deciding what to run.
"""

from __future__ import annotations

import logging

from models.errors import EntryBusyError, EntryNotFound
from models.schemas import Outcome, TriggerSource
from workflows.controller import PipelineController

log = logging.getLogger(__name__)


def retry(
    controller: PipelineController,
    entry_id: str,
    triggered_by: TriggerSource = TriggerSource.MANUAL,
) -> Outcome:
    """Manual retry. Always runs, whatever the last error was."""
    log.info("Retry requested for entry %s (%s)", entry_id, TriggerSource(triggered_by).value)
    return controller.advance(entry_id, triggered_by=triggered_by)


def _skipped(entry_id: str, reason: str) -> dict:
    return {"entry_id": entry_id, "outcome": "skipped", "reason": reason}


def sweep(
    controller: PipelineController,
    limit: int = 10,
    triggered_by: TriggerSource = TriggerSource.SWEEP,
) -> list[dict]:
    """Retry up to ``limit`` entries whose last error is retryable.

    Entries being advanced elsewhere are skipped, not waited for. One
    result per entry considered.
    """
    results = []
    for entry in controller.store.list_retriable_entries(limit=limit):
        if entry.last_error is None or not entry.last_error.retryable:
            continue
        try:
            outcome = controller.advance(entry.id, triggered_by=triggered_by)
        except EntryBusyError:
            log.info("Sweep: entry %s is busy, skipping", entry.id)
            results.append(_skipped(entry.id, "busy"))
            continue
        except EntryNotFound:
            results.append(_skipped(entry.id, "not_found"))
            continue
        results.append(outcome.to_dict())

    log.info("Sweep finished: %d entries considered", len(results))
    return results


def run_next(
    controller: PipelineController,
    triggered_by: TriggerSource = TriggerSource.SCHEDULE,
) -> dict:
    """Advance the next pending entry (highest priority, then oldest)."""
    entry = controller.store.next_pending_entry()
    if entry is None:
        log.info("No pending entries")
        return {"outcome": "idle", "message": "No pending entries"}
    log.info("Auto-selected entry %s (%s, priority %d)", entry.id, entry.seed_title, entry.priority)
    try:
        return controller.advance(entry.id, triggered_by=triggered_by).to_dict()
    except EntryBusyError:
        return _skipped(entry.id, "busy")
    except EntryNotFound:
        return _skipped(entry.id, "not_found")
