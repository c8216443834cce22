"""Test advance activities — outcome payloads, scheduled ticks, heartbeats and non-retryable rejections."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from temporalio.exceptions import ApplicationError

from activities.advance import _heartbeat, advance_entry, run_scheduled
from conftest import RECIPE_JSON, FakeContentProvider, make_entry
from models.errors import EntryBusyError, EntryNotFound
from models.schemas import LastError, Stage, Step
from workflows.pipeline import workflow_id


def test_returns_outcome_dict(make_controller, store):
    store.put_entry(make_entry())
    controller, _, _ = make_controller()
    with patch("activities.advance.get_controller", return_value=controller):
        result = advance_entry("entry-0001")
    assert result["outcome"] == "completed"
    assert result["stage"] == "assembly_done"


@pytest.mark.parametrize("error,error_type", [
    (EntryBusyError("entry-0001"), "EntryBusy"),
    (EntryNotFound("entry-0001"), "EntryNotFound"),
])
def test_rejections_are_not_retried(error, error_type):
    controller = MagicMock()
    controller.advance.side_effect = error
    with patch("activities.advance.get_controller", return_value=controller):
        with pytest.raises(ApplicationError) as exc:
            advance_entry("entry-0001")
    assert exc.value.non_retryable
    assert exc.value.type == error_type


def test_workflow_id_is_per_entry():
    assert workflow_id("abc") == "advance-abc"


def test_trigger_source_reaches_the_beads(make_controller, store):
    store.put_entry(make_entry())
    controller, _, _ = make_controller()
    with patch("activities.advance.get_controller", return_value=controller):
        advance_entry("entry-0001", "sweep")
    assert {b["triggered_by"] for b in store.get_beads_for_entry("entry-0001")} == {"sweep"}


class TestScheduledRun:

    def test_run_advances_next_pending(self, make_controller, store):
        store.put_entry(make_entry())
        controller, _, _ = make_controller()
        with patch("activities.advance.get_controller", return_value=controller):
            result = run_scheduled("run", 10)
        assert result["action"] == "run"
        assert result["count"] == 1
        assert result["results"][0]["outcome"] == "completed"
        assert {b["triggered_by"] for b in store.get_beads_for_entry("entry-0001")} == {"schedule"}

    def test_run_with_nothing_pending(self, make_controller):
        controller, _, _ = make_controller()
        with patch("activities.advance.get_controller", return_value=controller):
            result = run_scheduled("run", 10)
        assert result["results"] == [{"outcome": "idle", "message": "No pending entries"}]

    def test_sweep_retries_retriable_entries(self, make_controller, store):
        error = LastError(Step.ASSEMBLY, "503", "2026-01-02T00:00:00+00:00")
        store.put_entry(make_entry(stage=Stage.IMAGES_DONE, metadata=True, image_count=4, last_error=error))
        controller, _, _ = make_controller(content=FakeContentProvider(RECIPE_JSON))
        with patch("activities.advance.get_controller", return_value=controller):
            result = run_scheduled("sweep", 5)
        assert result["count"] == 1
        assert result["results"][0]["outcome"] == "completed"

    def test_unknown_action_is_not_retried(self):
        with pytest.raises(ApplicationError) as exc:
            run_scheduled("purge", 5)
        assert exc.value.type == "BadScheduleAction"
        assert exc.value.non_retryable


class TestHeartbeat:

    def test_noop_outside_an_activity(self):
        with patch("activities.advance.activity.heartbeat") as beat:
            _heartbeat("images slot 1")
        beat.assert_not_called()

    def test_forwards_detail_inside_an_activity(self):
        with patch("activities.advance.activity.in_activity", return_value=True), \
                patch("activities.advance.activity.heartbeat") as beat:
            _heartbeat("images slot 2")
        beat.assert_called_once_with("images slot 2")
