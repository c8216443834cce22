"""
Stage: Images — produces the four composition-locked images of an entry.

Slots are generated strictly in order, one provider call each, and every
image is persisted the moment it exists. A slot that already holds a
valid image is never paid for again, so a retry after a failure in slot 3
calls the provider only for slots 3 and 4.

Composition roles, one per slot, never repeated:
  1. finished dish hero shot
  2. raw ingredients flat lay
  3. cooking action shot
  4. styled presentation
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from config import PipelineSettings
from models.errors import ClaimLost, ImageStageFailure, StageFailure, TransientProviderError
from models.schemas import (
    COMPOSITION_ROLES,
    CompositionRole,
    ImageSlot,
    PipelineEntry,
    slot_is_valid,
)
from utils.images import fetch_reference, image_filename, save_image
from utils.llm import generate_image

log = logging.getLogger(__name__)

ROLE_LABELS = {
    CompositionRole.FINISHED_DISH: "finished dish hero shot",
    CompositionRole.RAW_INGREDIENTS: "raw ingredients layout",
    CompositionRole.COOKING_ACTION: "cooking action shot",
    CompositionRole.STYLED_PRESENTATION: "styled presentation",
}

COMPOSITION_CONSTRAINTS = {
    CompositionRole.FINISHED_DISH: (
        "Close-up 45-degree angle of the FINISHED, COMPLETE dish plated on the kitchen "
        "surface. Show the final result only: no raw ingredients, no cooking process."
    ),
    CompositionRole.RAW_INGREDIENTS: (
        "Overhead flat lay from directly above showing ONLY raw, uncooked ingredients, "
        "each separated in its own bowl, measuring cup or container. No finished dish "
        "visible, no cooking in progress."
    ),
    CompositionRole.COOKING_ACTION: (
        "Side or 3/4 angle of the dish being mixed, baked or prepared IN PROGRESS, with "
        "steam, bubbles or motion visible. No finished dish, no raw ingredient layout."
    ),
    CompositionRole.STYLED_PRESENTATION: (
        "Front view or side profile of the finished dish in an elegant styled "
        "presentation with complementary props such as cups, flowers or decorative "
        "plates. Must use a different angle from the close-up hero shot."
    ),
}

SCENE_RULES = (
    "Kitchen environment only (kitchen counter, table or cooking area) with a rich, "
    "detailed background that is never blurred. No people, no hands, no body parts. "
    "Tall portrait framing."
)


def subject_description(entry: PipelineEntry) -> str:
    if entry.metadata:
        title, description = entry.metadata.title, entry.metadata.description
    else:
        title, description = entry.seed_title, entry.seed_description
    return f"{title}. {description}".strip() if description else title


def build_image_instruction(subject: str, slot: int, settings: PipelineSettings) -> str:
    """Instruction for one slot: subject, role constraint, anti-duplication, watermark."""
    role = COMPOSITION_ROLES[slot - 1]
    others = ", ".join(
        f"image {i + 1} ({ROLE_LABELS[r]})"
        for i, r in enumerate(COMPOSITION_ROLES)
        if r is not role
    )
    parts = []
    if settings.image_prompt:
        parts.append(settings.image_prompt)
    parts += [
        f"IMAGE {slot} OF 4 — {ROLE_LABELS[role].upper()}: {subject}",
        f"COMPOSITION REQUIREMENT: {COMPOSITION_CONSTRAINTS[role]}",
        (
            f"This image MUST be visually distinct from {others}: different subject "
            "matter, different camera angle and different composition. Never repeat "
            "what those images show."
        ),
        SCENE_RULES,
        (
            f'Add the watermark text "www.{settings.watermark_domain}" centered at the '
            "bottom on a semi-transparent dark band (rgba 0,0,0,0.5) so the white text "
            "stays readable on light-colored food."
        ),
    ]
    return "\n".join(parts)


@dataclass
class ImageStageResult:
    slots: list[ImageSlot]
    reused: list[int] = field(default_factory=list)  # 1-based slot numbers
    generated: list[int] = field(default_factory=list)


_UNFETCHED = object()


class ImageStage:
    """Runs the Images stage with per-slot persistence and skip-on-retry."""

    def __init__(
        self,
        settings: PipelineSettings,
        generate: Callable[..., bytes] = generate_image,
        fetch: Callable[[str | None, float], bytes | None] = fetch_reference,
        save: Callable[..., str] = save_image,
    ):
        self.settings = settings
        self._generate = generate
        self._fetch = fetch
        self._save = save

    def run(
        self,
        entry: PipelineEntry,
        attempt: int,
        persist_slot: Callable[[int, ImageSlot], None],
    ) -> ImageStageResult:
        slots = list(entry.images)
        reused: list[int] = []
        generated: list[int] = []
        reference = _UNFETCHED
        subject = subject_description(entry)
        keyword = entry.metadata.keyword if entry.metadata else entry.seed_keyword or entry.seed_title

        for index, role in enumerate(COMPOSITION_ROLES):
            slot_no = index + 1
            if slot_is_valid(slots[index], index):
                log.info("Image %d/4 (%s) already exists, reusing %s",
                         slot_no, role.value, slots[index].url)
                reused.append(slot_no)
                continue

            if reference is _UNFETCHED:
                reference = self._fetch(entry.reference_image_url, self.settings.reference_fetch_timeout_sec)

            prompt = build_image_instruction(subject, slot_no, self.settings)
            completed = sorted(reused + generated)
            try:
                slot = self._generate_slot(entry, slot_no, role, prompt, reference, attempt, keyword)
            except StageFailure as cause:
                log.error("Image %d/4 (%s) failed for entry %s: %s",
                          slot_no, role.value, entry.id, cause.message)
                raise ImageStageFailure(completed, slot_no, cause) from cause

            try:
                persist_slot(index, slot)
            except ClaimLost:
                raise
            except Exception as e:
                log.exception("Could not persist image %d/4 for entry %s", slot_no, entry.id)
                cause = StageFailure(f"Could not persist image {slot_no}: {e}")
                raise ImageStageFailure(completed, slot_no, cause) from e

            log.info("Image %d/4 (%s) persisted: %s", slot_no, role.value, slot.url)
            slots[index] = slot
            generated.append(slot_no)

        return ImageStageResult(slots=slots, reused=reused, generated=generated)

    def _generate_slot(
        self,
        entry: PipelineEntry,
        slot_no: int,
        role: CompositionRole,
        prompt: str,
        reference: bytes | None,
        attempt: int,
        keyword: str,
    ) -> ImageSlot:
        log.info("Generating image %d/4 (%s)%s, timeout %gs",
                 slot_no, role.value, " with reference" if reference else "",
                 self.settings.image_timeout_sec)
        started = time.monotonic()
        data = self._generate(
            prompt,
            reference,
            timeout=self.settings.image_timeout_sec,
            model=self.settings.image_model,
            size=self.settings.image_size,
        )
        log.info("Image %d/4 received in %.1fs (%d bytes)",
                 slot_no, time.monotonic() - started, len(data))

        filename = image_filename(keyword, entry.id, slot_no, attempt)
        try:
            url = self._save(data, filename, self.settings.upload_dir, self.settings.upload_url_prefix)
        except OSError as e:
            raise TransientProviderError(f"Could not store image {slot_no}: {e}") from e
        return ImageSlot(url=url, prompt_used=prompt, composition_role=role)
