"""Test controller — advance loop, checkpoint resumption and retry triggers."""
from __future__ import annotations

import threading

import pytest

from conftest import (
    METADATA_JSON,
    RECIPE_JSON,
    FakeContentProvider,
    FakeImageProvider,
    make_entry,
)
from models.errors import (
    ConfigurationError,
    ContentPolicyRejection,
    EntryBusyError,
    EntryNotFound,
    ErrorKind,
    ProviderTimeout,
    RejectedRequest,
    TransientProviderError,
)
from models.schemas import EntryMetadata, LastError, OutcomeStatus, Stage, Step, stage_rank
from workflows.controller import PipelineController
from workflows.retry import retry, sweep


class TestFirstRun:

    def test_fresh_entry_completes_in_one_call(self, make_controller, store):
        controller, content, images = make_controller()
        store.put_entry(make_entry())

        outcome = controller.advance("entry-0001")

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.stages_run == ["metadata", "images", "assembly"]
        assert outcome.images_generated == 4
        entry = store.get_entry("entry-0001")
        assert entry.stage is Stage.ASSEMBLY_DONE
        assert entry.produced_artifact_id == outcome.produced_artifact_id
        assert entry.attempts == 1
        assert entry.last_error is None
        assert len(content.calls) == 2
        assert images.slots == [1, 2, 3, 4]

    def test_beads_recorded_per_stage(self, make_controller, store):
        controller, _, _ = make_controller()
        store.put_entry(make_entry())
        controller.advance("entry-0001")

        beads = store.get_beads_for_entry("entry-0001")
        assert [b["category"] for b in beads] == ["metadata", "images", "assembly"]
        assert {b["status"] for b in beads} == {"completed"}
        assert {b["attempt"] for b in beads} == {1}

    def test_unknown_entry(self, make_controller):
        controller, _, _ = make_controller()
        with pytest.raises(EntryNotFound):
            controller.advance("missing")


class TestResumption:

    def test_slot_timeout_keeps_earlier_slots(self, make_controller, store):
        """Metadata present, slots 1-2 filled, slot 3 times out."""
        entry = make_entry(stage=Stage.METADATA_DONE, metadata=True, image_count=2)
        store.put_entry(entry)
        images = FakeImageProvider(failures={3: ProviderTimeout("timed out after 120s", timeout_sec=120)})
        controller, content, _ = make_controller(content=FakeContentProvider(), images=images)

        outcome = controller.advance(entry.id)

        assert outcome.status is OutcomeStatus.BLOCKED
        assert images.slots == [3]
        saved = store.get_entry(entry.id)
        assert saved.stage is Stage.METADATA_DONE
        assert saved.images[:2] == entry.images[:2]
        assert saved.images[2] is None
        error = saved.last_error
        assert error.failed_stage is Step.IMAGES
        assert error.slot == 3
        assert error.kind is ErrorKind.TIMEOUT
        assert error.retryable
        assert outcome.error.slot == 3
        assert outcome.images_preserved == 2
        assert content.calls == []

    def test_no_duplicate_billing_on_retry(self, make_controller, store):
        store.put_entry(make_entry(stage=Stage.METADATA_DONE, metadata=True))
        images = FakeImageProvider(failures={3: TransientProviderError("502 bad gateway")})
        controller, _, _ = make_controller(content=FakeContentProvider(RECIPE_JSON), images=images)

        first = controller.advance("entry-0001")
        assert first.status is OutcomeStatus.BLOCKED
        assert images.slots == [1, 2, 3]

        images.slots.clear()
        second = retry(controller, "entry-0001")

        assert second.status is OutcomeStatus.COMPLETED
        assert images.slots == [3, 4]
        assert second.images_preserved == 2
        assert second.images_generated == 2
        entry = store.get_entry("entry-0001")
        assert entry.attempts == 2
        assert entry.last_error is None

    def test_assembly_failure_keeps_images(self, make_controller, store):
        store.put_entry(make_entry(stage=Stage.IMAGES_DONE, metadata=True, image_count=4))
        content = FakeContentProvider(TransientProviderError("503"), RECIPE_JSON)
        controller, _, images = make_controller(content=content)

        blocked = controller.advance("entry-0001")
        assert blocked.status is OutcomeStatus.BLOCKED
        assert blocked.error.failed_stage is Step.ASSEMBLY
        assert store.get_entry("entry-0001").stage is Stage.IMAGES_DONE

        done = controller.advance("entry-0001")
        assert done.status is OutcomeStatus.COMPLETED
        assert images.slots == []
        assert len(content.calls) == 2

    def test_metadata_parse_failure_is_retryable(self, make_controller, store):
        store.put_entry(make_entry())
        controller, _, images = make_controller(content=FakeContentProvider("not json at all"))

        outcome = controller.advance("entry-0001")

        assert outcome.status is OutcomeStatus.BLOCKED
        assert outcome.error.failed_stage is Step.METADATA
        assert outcome.error.retryable
        assert outcome.stage is Stage.NOT_STARTED
        assert images.slots == []

    def test_content_policy_is_not_retryable(self, make_controller, store):
        store.put_entry(make_entry())
        controller, _, _ = make_controller(content=FakeContentProvider(ContentPolicyRejection("refused")))
        outcome = controller.advance("entry-0001")
        assert outcome.error.kind is ErrorKind.CONTENT_POLICY
        assert not outcome.error.retryable

    def test_configuration_error_is_recorded(self, make_controller, store):
        store.put_entry(make_entry())
        controller, _, _ = make_controller(content=FakeContentProvider(ConfigurationError("no key")))
        outcome = controller.advance("entry-0001")
        assert outcome.status is OutcomeStatus.BLOCKED
        assert store.get_entry("entry-0001").last_error.kind is ErrorKind.CONFIGURATION

    def test_unexpected_error_is_blocked_not_swallowed(self, make_controller, store):
        store.put_entry(make_entry())
        controller, _, _ = make_controller(content=FakeContentProvider(KeyError("boom")))
        outcome = controller.advance("entry-0001")
        assert outcome.status is OutcomeStatus.BLOCKED
        assert "boom" in outcome.error.message
        assert outcome.error.kind is ErrorKind.TRANSIENT


class TestTerminalIdempotence:

    def test_repeated_advance_on_complete_entry(self, make_controller, store):
        store.put_entry(make_entry(stage=Stage.ASSEMBLY_DONE, metadata=True, image_count=4, artifact="r-1"))
        controller, content, images = make_controller(content=FakeContentProvider())

        first = controller.advance("entry-0001")
        second = controller.advance("entry-0001")

        assert first.status is second.status is OutcomeStatus.COMPLETED
        assert first.produced_artifact_id == second.produced_artifact_id == "r-1"
        assert store.get_entry("entry-0001").attempts == 2
        assert content.calls == []
        assert images.slots == []
        assert [op for op, _ in store.writes] == ["increment_attempts", "increment_attempts"]

    def test_stage_never_decreases(self, make_controller, store):
        store.put_entry(make_entry())
        images = FakeImageProvider(failures={2: TransientProviderError("500")})
        content = FakeContentProvider(METADATA_JSON, TransientProviderError("503"), RECIPE_JSON)
        controller, _, _ = make_controller(content=content, images=images)

        ranks = []
        for _ in range(4):
            controller.advance("entry-0001")
            ranks.append(stage_rank(store.get_entry("entry-0001").stage))

        assert ranks == sorted(ranks)
        assert store.get_entry("entry-0001").stage is Stage.ASSEMBLY_DONE


class TestSerialization:

    def test_busy_entry_is_rejected(self, make_controller, store, settings):
        store.put_entry(make_entry())
        assert store.claim_entry("entry-0001", "someone-else", settings.entry_lease_sec)
        controller, content, _ = make_controller()

        with pytest.raises(EntryBusyError):
            controller.advance("entry-0001")
        assert store.get_entry("entry-0001").attempts == 0
        assert content.calls == []

    def test_claim_released_after_advance(self, make_controller, store, settings):
        store.put_entry(make_entry())
        controller, _, _ = make_controller(content=FakeContentProvider("garbage"))
        controller.advance("entry-0001")
        assert store.claim_entry("entry-0001", "next", settings.entry_lease_sec)

    def test_concurrent_advances_do_not_interleave(self, make_controller, store):
        store.put_entry(make_entry(stage=Stage.METADATA_DONE, metadata=True))
        entered = threading.Event()
        release = threading.Event()
        images = FakeImageProvider()

        def slow_generate(prompt, reference=None, **kwargs):
            entered.set()
            release.wait(5)
            return images(prompt, reference, **kwargs)

        controller, _, _ = make_controller(content=FakeContentProvider(RECIPE_JSON), images=slow_generate)
        results = {}
        worker = threading.Thread(target=lambda: results.setdefault("first", controller.advance("entry-0001")))
        worker.start()
        entered.wait(5)

        with pytest.raises(EntryBusyError):
            controller.advance("entry-0001")

        release.set()
        worker.join(5)
        assert results["first"].status is OutcomeStatus.COMPLETED
        assert images.slots == [1, 2, 3, 4]


class TestSweep:

    @staticmethod
    def _failed(entry_id, kind):
        return make_entry(
            entry_id,
            stage=Stage.IMAGES_DONE,
            metadata=True,
            image_count=4,
            last_error=LastError(Step.ASSEMBLY, "failed", "2026-01-02T00:00:00+00:00", kind=kind),
        )

    def test_sweep_skips_non_retryable_and_busy(self, make_controller, store, settings):
        store.put_entry(self._failed("entry-a", ErrorKind.TRANSIENT))
        store.put_entry(self._failed("entry-b", ErrorKind.TIMEOUT))
        store.put_entry(self._failed("entry-c", ErrorKind.CONTENT_POLICY))
        store.put_entry(self._failed("entry-d", ErrorKind.CONFIGURATION))
        store.put_entry(self._failed("entry-e", ErrorKind.REJECTED))
        assert store.claim_entry("entry-b", "elsewhere", settings.entry_lease_sec)
        controller, content, images = make_controller(content=FakeContentProvider(RECIPE_JSON))

        results = {r["entry_id"]: r for r in sweep(controller, limit=10)}

        assert set(results) == {"entry-a", "entry-b"}
        assert results["entry-a"]["outcome"] == "completed"
        assert results["entry-b"] == {"entry_id": "entry-b", "outcome": "skipped", "reason": "busy"}
        assert len(content.calls) == 1
        assert images.slots == []
        assert store.get_entry("entry-c").attempts == 0

    def test_manual_retry_runs_non_retryable_entries(self, make_controller, store):
        store.put_entry(self._failed("entry-c", ErrorKind.CONTENT_POLICY))
        controller, _, _ = make_controller(content=FakeContentProvider(RECIPE_JSON))
        assert retry(controller, "entry-c").status is OutcomeStatus.COMPLETED

    def test_rejected_request_is_recorded_and_never_swept(self, make_controller, store):
        store.put_entry(make_entry(stage=Stage.METADATA_DONE, metadata=True))
        rejected = RejectedRequest("Provider rejected the request (400): Invalid value for 'size'", status_code=400)
        images = FakeImageProvider(failures={1: rejected})
        controller, _, _ = make_controller(images=images)

        outcome = controller.advance("entry-0001")

        assert outcome.status is OutcomeStatus.BLOCKED
        assert outcome.error.kind is ErrorKind.REJECTED
        assert not outcome.error.retryable
        assert store.list_retriable_entries() == []
        assert sweep(controller) == []


class TestClaimRenewal:

    def test_claim_renewed_and_heartbeat_sent_per_stage_and_slot(self, make_controller, store):
        store.put_entry(make_entry())
        controller, _, _ = make_controller()
        beats = []
        controller.heartbeat = beats.append

        assert controller.advance("entry-0001").status is OutcomeStatus.COMPLETED
        assert beats == [
            "metadata", "images",
            "images slot 1", "images slot 2", "images slot 3", "images slot 4",
            "assembly",
        ]

    def test_lost_claim_stops_without_writing(self, make_controller, store, settings):
        store.put_entry(make_entry(stage=Stage.METADATA_DONE, metadata=True))
        images = FakeImageProvider()

        def generate_then_lose_claim(prompt, reference=None, **kwargs):
            data = images(prompt, reference, **kwargs)
            if images.slots[-1] == 2:
                # lease ran out while slot 2 was generating; another worker took over
                assert store.claim_entry("entry-0001", "rescuer", 0)
            return data

        controller, content, _ = make_controller(content=FakeContentProvider(), images=generate_then_lose_claim)

        outcome = controller.advance("entry-0001")

        assert outcome.status is OutcomeStatus.PROGRESSED
        saved = store.get_entry("entry-0001")
        assert [i for i, slot in enumerate(saved.images) if slot] == [0]
        assert saved.last_error is None
        assert images.slots == [1, 2]
        assert content.calls == []
        # the new holder keeps its claim
        assert store.renew_claim("entry-0001", "rescuer")


class TestAuditTrail:

    def test_trigger_source_is_recorded_on_beads(self, make_controller, store):
        error = LastError(Step.ASSEMBLY, "503", "2026-01-02T00:00:00+00:00")
        store.put_entry(make_entry(stage=Stage.IMAGES_DONE, metadata=True, image_count=4, last_error=error))
        controller, _, _ = make_controller(content=FakeContentProvider(RECIPE_JSON))

        sweep(controller)

        [bead] = store.get_beads_for_entry("entry-0001")
        assert bead["triggered_by"] == "sweep"

    def test_repeated_step_is_recorded_as_skipped(self, store, settings):
        class IncompleteMetadata:
            def run(self, seed):
                return EntryMetadata(title="Chai Cake", description="", keyword="", category="")

        store.put_entry(make_entry())
        controller = PipelineController(store, settings=settings, metadata_stage=IncompleteMetadata())

        outcome = controller.advance("entry-0001")

        assert outcome.status is OutcomeStatus.PROGRESSED
        beads = store.get_beads_for_entry("entry-0001")
        assert [(b["category"], b["status"]) for b in beads] == [
            ("metadata", "completed"),
            ("metadata", "skipped"),
        ]


class TestStageCatchUp:

    def test_images_done_recorded_before_assembly(self, make_controller, store):
        """All four slots were saved but the images_done write never happened."""
        store.put_entry(make_entry(stage=Stage.METADATA_DONE, metadata=True, image_count=4))
        content = FakeContentProvider(TransientProviderError("503"))
        controller, _, images = make_controller(content=content)

        outcome = controller.advance("entry-0001")

        assert outcome.status is OutcomeStatus.BLOCKED
        assert outcome.error.failed_stage is Step.ASSEMBLY
        assert store.get_entry("entry-0001").stage is Stage.IMAGES_DONE
        assert images.slots == []
