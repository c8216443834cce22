"""
Domain models for the recipe pipeline.

A ``PipelineEntry`` is one unit of work: an immutable seed plus every
artifact the stages have produced so far and the bookkeeping needed to
resume it after a failure or a restart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from models.errors import ErrorKind, RETRYABLE_KINDS


class Stage(str, Enum):
    NOT_STARTED = "not_started"
    METADATA_DONE = "metadata_done"
    IMAGES_DONE = "images_done"
    ASSEMBLY_DONE = "assembly_done"


STAGE_ORDER = [Stage.NOT_STARTED, Stage.METADATA_DONE, Stage.IMAGES_DONE, Stage.ASSEMBLY_DONE]


def stage_rank(stage: Stage | str) -> int:
    return STAGE_ORDER.index(Stage(stage))


class Step(str, Enum):
    """What the checkpoint resolver says should run next."""
    METADATA = "metadata"
    IMAGES = "images"
    ASSEMBLY = "assembly"
    COMPLETE = "complete"


class TriggerSource(str, Enum):
    """Who asked for an advance; recorded on every bead."""
    MANUAL = "manual"
    SWEEP = "sweep"
    SCHEDULE = "schedule"


# Stage an entry reaches once the step succeeds
STEP_COMPLETES = {
    Step.METADATA: Stage.METADATA_DONE,
    Step.IMAGES: Stage.IMAGES_DONE,
    Step.ASSEMBLY: Stage.ASSEMBLY_DONE,
}


class CompositionRole(str, Enum):
    FINISHED_DISH = "finished_dish"
    RAW_INGREDIENTS = "raw_ingredients"
    COOKING_ACTION = "cooking_action"
    STYLED_PRESENTATION = "styled_presentation"


# Slot order is fixed: slot 1 is always the finished dish, and so on
COMPOSITION_ROLES = [
    CompositionRole.FINISHED_DISH,
    CompositionRole.RAW_INGREDIENTS,
    CompositionRole.COOKING_ACTION,
    CompositionRole.STYLED_PRESENTATION,
]
IMAGE_SLOT_COUNT = len(COMPOSITION_ROLES)


def _iso(value: Any) -> str:
    """Timestamps come back from Postgres as datetimes, from JSON as strings."""
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class Seed:
    """The trending-content lead an entry was created from."""
    title: str
    description: str = ""
    keyword: str = ""
    category: str = ""
    reference_image_url: str | None = None


@dataclass
class EntryMetadata:
    """SEO fields produced by the Metadata stage."""
    title: str
    description: str
    keyword: str
    category: str

    def is_complete(self) -> bool:
        return all(
            isinstance(v, str) and v.strip()
            for v in (self.title, self.description, self.keyword, self.category)
        )

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "keyword": self.keyword,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: dict) -> EntryMetadata:
        return cls(
            title=data.get("title", ""),
            description=data.get("description", ""),
            keyword=data.get("keyword", ""),
            category=data.get("category", ""),
        )


@dataclass
class ImageSlot:
    """One persisted image and the instruction that produced it."""
    url: str
    prompt_used: str
    composition_role: CompositionRole

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "prompt_used": self.prompt_used,
            "composition_role": self.composition_role.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ImageSlot:
        return cls(
            url=data.get("url", ""),
            prompt_used=data.get("prompt_used", ""),
            composition_role=CompositionRole(data["composition_role"]),
        )


def slot_is_valid(slot: ImageSlot | None, index: int) -> bool:
    """A slot counts only if it has a URL and holds the role its position requires."""
    return (
        slot is not None
        and bool(slot.url and slot.url.strip())
        and slot.composition_role == COMPOSITION_ROLES[index]
    )


@dataclass
class LastError:
    """Why the most recent advance stopped."""
    failed_stage: Step
    message: str
    occurred_at: str
    kind: ErrorKind = ErrorKind.TRANSIENT
    slot: int | None = None  # 1-based
    completed_slots: list[int] = field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict:
        return {
            "failed_stage": self.failed_stage.value,
            "message": self.message,
            "occurred_at": self.occurred_at,
            "kind": self.kind.value,
            "slot": self.slot,
            "completed_slots": list(self.completed_slots),
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LastError:
        return cls(
            failed_stage=Step(data["failed_stage"]),
            message=data.get("message", ""),
            occurred_at=_iso(data.get("occurred_at")),
            kind=ErrorKind(data.get("kind", ErrorKind.TRANSIENT.value)),
            slot=data.get("slot"),
            completed_slots=list(data.get("completed_slots") or []),
        )


@dataclass
class PipelineEntry:
    """One unit of pipeline work, from seed to published recipe."""
    id: str
    seed_title: str
    seed_description: str = ""
    seed_keyword: str = ""
    seed_category: str = ""
    reference_image_url: str | None = None
    author_id: str | None = None
    priority: int = 0  # higher runs first when auto-selecting
    stage: Stage = Stage.NOT_STARTED
    metadata: EntryMetadata | None = None
    images: list[ImageSlot | None] = field(default_factory=lambda: [None] * IMAGE_SLOT_COUNT)
    produced_artifact_id: str | None = None
    attempts: int = 0
    last_error: LastError | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def seed(self) -> Seed:
        return Seed(
            title=self.seed_title,
            description=self.seed_description,
            keyword=self.seed_keyword,
            category=self.seed_category,
            reference_image_url=self.reference_image_url,
        )

    def valid_image_indexes(self) -> list[int]:
        return [i for i, slot in enumerate(self.images) if slot_is_valid(slot, i)]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seed_title": self.seed_title,
            "seed_description": self.seed_description,
            "seed_keyword": self.seed_keyword,
            "seed_category": self.seed_category,
            "reference_image_url": self.reference_image_url,
            "author_id": self.author_id,
            "priority": self.priority,
            "stage": self.stage.value,
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "images": [s.to_dict() if s else None for s in self.images],
            "produced_artifact_id": self.produced_artifact_id,
            "attempts": self.attempts,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PipelineEntry:
        raw_images = list(data.get("images") or [])
        raw_images += [None] * (IMAGE_SLOT_COUNT - len(raw_images))
        return cls(
            id=data["id"],
            seed_title=data.get("seed_title", ""),
            seed_description=data.get("seed_description") or "",
            seed_keyword=data.get("seed_keyword") or "",
            seed_category=data.get("seed_category") or "",
            reference_image_url=data.get("reference_image_url"),
            author_id=data.get("author_id"),
            priority=int(data.get("priority") or 0),
            stage=Stage(data.get("stage") or Stage.NOT_STARTED.value),
            metadata=EntryMetadata.from_dict(data["metadata"]) if data.get("metadata") else None,
            images=[ImageSlot.from_dict(s) if s else None for s in raw_images[:IMAGE_SLOT_COUNT]],
            produced_artifact_id=data.get("produced_artifact_id"),
            attempts=int(data.get("attempts") or 0),
            last_error=LastError.from_dict(data["last_error"]) if data.get("last_error") else None,
            created_at=_iso(data.get("created_at")),
            updated_at=_iso(data.get("updated_at")),
        )


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    BLOCKED = "blocked"
    PROGRESSED = "progressed"


@dataclass
class Outcome:
    """What one advance call achieved, as reported to the operator."""
    status: OutcomeStatus
    entry_id: str
    stage: Stage
    attempts: int
    error: LastError | None = None
    produced_artifact_id: str | None = None
    stages_run: list[str] = field(default_factory=list)
    images_preserved: int = 0
    images_generated: int = 0
    summary: str = ""

    def to_dict(self) -> dict:
        return {
            "outcome": self.status.value,
            "entry_id": self.entry_id,
            "stage": self.stage.value,
            "attempts": self.attempts,
            "error": self.error.to_dict() if self.error else None,
            "produced_artifact_id": self.produced_artifact_id,
            "stages_run": list(self.stages_run),
            "images_preserved": self.images_preserved,
            "images_generated": self.images_generated,
            "summary": self.summary,
        }
