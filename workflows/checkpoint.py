"""
Checkpoint resolver — decides what an entry needs next.

The decision looks only at which artifacts are present and valid, never
at ``stage``, ``last_error`` or ``attempts``, so asking twice without an
intervening write always gives the same answer.
"""

from __future__ import annotations

from models.schemas import IMAGE_SLOT_COUNT, PipelineEntry, Step


def has_metadata(entry: PipelineEntry) -> bool:
    return entry.metadata is not None and entry.metadata.is_complete()


def resolve(entry: PipelineEntry) -> Step:
    """Return the single next step to execute for this entry."""
    if entry.produced_artifact_id:
        return Step.COMPLETE
    if not has_metadata(entry):
        return Step.METADATA
    if len(entry.valid_image_indexes()) < IMAGE_SLOT_COUNT:
        return Step.IMAGES
    return Step.ASSEMBLY


def progress(entry: PipelineEntry) -> int:
    """Percent of the three stages whose artifacts are in place."""
    step = resolve(entry)
    done = {Step.METADATA: 0, Step.IMAGES: 1, Step.ASSEMBLY: 2, Step.COMPLETE: 3}[step]
    return round(done * 100 / 3)


def resume_summary(entry: PipelineEntry) -> str:
    """Operator-facing description of what is kept and where a retry resumes."""
    step = resolve(entry)
    parts = []
    if has_metadata(entry):
        parts.append("SEO metadata complete")
    ready = len(entry.valid_image_indexes())
    if ready == IMAGE_SLOT_COUNT:
        parts.append("all 4 images generated (no re-generation needed)")
    elif ready:
        parts.append(f"{ready}/4 images kept (only missing slots will be generated)")
    if entry.produced_artifact_id:
        parts.append(f"recipe {entry.produced_artifact_id} published")

    if step is Step.COMPLETE:
        resume = "nothing to do"
    else:
        resume = f"resumes at {step.value}"
    if not parts:
        return f"Starting from the beginning; {resume}"
    return f"{'; '.join(parts)}; {resume}"
