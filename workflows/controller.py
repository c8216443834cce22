"""
Pipeline controller — the single entry point for first runs and retries.

One ``advance`` call:
  1. claims the entry (at most one advance in flight per entry)
  2. increments ``attempts``
  3. loops: resolve next step → run its stage → persist → re-read,
     renewing the claim before every stage and every image slot
  4. stops at Complete, on the first failure, if the resolver asks for
     a step that already ran in this call, or if the claim was lost

Failures are persisted verbatim as ``last_error``; the entry keeps every
artifact it had, including image slots persisted before the failure.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from config import PipelineSettings, load_settings
from activities.assembly import AssemblyStage
from activities.images import ImageStage
from activities.metadata import MetadataStage
from features.beads import BeadTracker
from models.errors import ClaimLost, EntryBusyError, EntryNotFound, ImageStageFailure, StageFailure
from models.schemas import (
    STEP_COMPLETES,
    ImageSlot,
    LastError,
    Outcome,
    OutcomeStatus,
    PipelineEntry,
    Stage,
    Step,
    TriggerSource,
    stage_rank,
)
from workflows.checkpoint import resolve, resume_summary

log = logging.getLogger(__name__)

STEP_LABELS = {
    Step.METADATA: "Generate SEO Metadata",
    Step.IMAGES: "Generate Images",
    Step.ASSEMBLY: "Assemble Recipe",
}


class _RunReport:
    """What happened during one advance call, for the outcome."""

    def __init__(self):
        self.stages_run: list[str] = []
        self.images_preserved = 0
        self.images_generated = 0


class PipelineController:
    """Drives entries through Metadata → Images → Assembly."""

    def __init__(
        self,
        store,
        settings: PipelineSettings | None = None,
        metadata_stage: MetadataStage | None = None,
        image_stage: ImageStage | None = None,
        assembly_stage: AssemblyStage | None = None,
        heartbeat: Callable[[str], None] | None = None,
    ):
        self.store = store
        self.settings = settings or load_settings()
        self.metadata_stage = metadata_stage or MetadataStage(self.settings)
        self.image_stage = image_stage or ImageStage(self.settings)
        self.assembly_stage = assembly_stage or AssemblyStage(self.settings, store)
        self.heartbeat = heartbeat

    def advance(self, entry_id: str, triggered_by: TriggerSource = TriggerSource.MANUAL) -> Outcome:
        """Run the entry as far as it will go. Raises EntryNotFound / EntryBusyError."""
        if self.store.get_entry(entry_id) is None:
            raise EntryNotFound(entry_id)

        owner = f"advance-{uuid.uuid4().hex[:12]}"
        if not self.store.claim_entry(entry_id, owner, self.settings.entry_lease_sec):
            log.warning("Entry %s is already being advanced, rejecting", entry_id)
            raise EntryBusyError(entry_id)
        try:
            return self._advance_claimed(entry_id, owner, TriggerSource(triggered_by))
        finally:
            self.store.release_entry(entry_id, owner)

    def _advance_claimed(self, entry_id: str, owner: str, triggered_by: TriggerSource) -> Outcome:
        attempt = self.store.increment_attempts(entry_id)
        entry = self.store.get_entry(entry_id)
        if attempt is None or entry is None:
            raise EntryNotFound(entry_id)

        tracker = BeadTracker(entry_id, attempt, persist=self.store.upsert_bead, triggered_by=triggered_by)
        report = _RunReport()
        executed: set[Step] = set()
        log.info("Advancing entry %s (attempt %d, stage %s, %s)",
                 entry_id, attempt, entry.stage.value, triggered_by.value)

        while True:
            step = resolve(entry)
            if step is Step.COMPLETE:
                log.info("Entry %s complete: recipe %s", entry_id, entry.produced_artifact_id)
                return self._outcome(OutcomeStatus.COMPLETED, entry, report)

            if step in executed:
                log.warning("Resolver asked for %s twice on entry %s, stopping", step.value, entry_id)
                bead = tracker.create(STEP_LABELS[step], step.value, input_summary=resume_summary(entry))
                tracker.skip(bead, f"{step.value} already ran in this advance")
                return self._outcome(OutcomeStatus.PROGRESSED, entry, report)
            executed.add(step)

            bead = tracker.create(STEP_LABELS[step], step.value, input_summary=resume_summary(entry))
            tracker.start(bead)
            try:
                self._keep_claim(entry_id, owner, step.value)
                if step is Step.ASSEMBLY:
                    entry = self._catch_up_stage(entry)
                output = self._run_step(step, entry, attempt, owner, report)
            except ClaimLost as lost:
                log.warning("%s; abandoning %s without writing", lost, step.value)
                tracker.fail(bead, str(lost))
                return self._outcome(OutcomeStatus.PROGRESSED, self.store.get_entry(entry_id), report)
            except StageFailure as failure:
                error = self._record_failure(entry_id, step, failure)
                tracker.fail(bead, failure.message, metadata={"kind": error.kind.value, "slot": error.slot})
                entry = self.store.get_entry(entry_id)
                log.info("Entry %s blocked at %s; beads: %s", entry_id, step.value, tracker.summary())
                return self._outcome(OutcomeStatus.BLOCKED, entry, report)
            except Exception as e:
                log.exception("Unexpected error in %s for entry %s", step.value, entry_id)
                failure = StageFailure(f"Unexpected error in {step.value}: {e}")
                self._record_failure(entry_id, step, failure)
                tracker.fail(bead, failure.message)
                entry = self.store.get_entry(entry_id)
                return self._outcome(OutcomeStatus.BLOCKED, entry, report)

            metadata = None
            if step is Step.IMAGES:
                metadata = {"reused": report.images_preserved, "generated": report.images_generated}
            tracker.complete(bead, output_summary=output, metadata=metadata)
            report.stages_run.append(step.value)
            entry = self.store.get_entry(entry_id)
            log.info("CHECKPOINT: entry %s reached %s", entry_id, STEP_COMPLETES[step].value)

    def _keep_claim(self, entry_id: str, owner: str, detail: str) -> None:
        if not self.store.renew_claim(entry_id, owner):
            raise ClaimLost(entry_id)
        if self.heartbeat is not None:
            self.heartbeat(detail)

    def _catch_up_stage(self, entry: PipelineEntry) -> PipelineEntry:
        """All four slots exist but a crash skipped the images_done write."""
        if stage_rank(entry.stage) >= stage_rank(Stage.IMAGES_DONE):
            return entry
        log.info("Entry %s has all 4 images at stage %s, recording images_done", entry.id, entry.stage.value)
        self.store.advance_stage(entry.id, Stage.IMAGES_DONE)
        return self.store.get_entry(entry.id)

    def _persist_slot(self, entry_id: str, owner: str, index: int, slot: ImageSlot) -> None:
        self._keep_claim(entry_id, owner, f"images slot {index + 1}")
        self.store.save_image_slot(entry_id, index, slot)

    def _run_step(self, step: Step, entry: PipelineEntry, attempt: int, owner: str, report: _RunReport) -> str:
        if step is Step.METADATA:
            metadata = self.metadata_stage.run(entry.seed)
            self.store.save_metadata(entry.id, metadata)
            return f"{metadata.title} [{metadata.keyword}]"

        if step is Step.IMAGES:
            try:
                result = self.image_stage.run(
                    entry,
                    attempt,
                    persist_slot=lambda index, slot: self._persist_slot(entry.id, owner, index, slot),
                )
            except ImageStageFailure as failure:
                already_valid = set(i + 1 for i in entry.valid_image_indexes())
                report.images_preserved = len(failure.completed_slots)
                report.images_generated = len(set(failure.completed_slots) - already_valid)
                raise
            report.images_preserved = len(result.reused)
            report.images_generated = len(result.generated)
            self.store.advance_stage(entry.id, STEP_COMPLETES[step])
            return f"{len(result.generated)} generated, {len(result.reused)} reused"

        if step is Step.ASSEMBLY:
            artifact_id = self.assembly_stage.run(entry)
            self.store.complete_assembly(entry.id, artifact_id)
            return f"recipe {artifact_id}"

        raise ValueError(f"Not an executable step: {step}")

    def _record_failure(self, entry_id: str, step: Step, failure: StageFailure) -> LastError:
        error = LastError(
            failed_stage=step,
            message=failure.message,
            occurred_at=datetime.now(timezone.utc).isoformat(),
            kind=failure.kind,
            slot=failure.slot,
            completed_slots=getattr(failure, "completed_slots", []),
        )
        self.store.record_failure(entry_id, error)
        log.error("Entry %s failed at %s (%s, retryable=%s): %s",
                  entry_id, step.value, error.kind.value, error.retryable, error.message)
        return error

    def _outcome(self, status: OutcomeStatus, entry: PipelineEntry, report: _RunReport) -> Outcome:
        return Outcome(
            status=status,
            entry_id=entry.id,
            stage=entry.stage,
            attempts=entry.attempts,
            error=entry.last_error if status is OutcomeStatus.BLOCKED else None,
            produced_artifact_id=entry.produced_artifact_id,
            stages_run=report.stages_run,
            images_preserved=report.images_preserved,
            images_generated=report.images_generated,
            summary=resume_summary(entry),
        )
