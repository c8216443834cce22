"""
Stage: Assembly — writes the final recipe from metadata, the four images
and the chosen author. Terminal: the entry id is the idempotency key, so
a second run returns the first recipe instead of creating another.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Callable

from config import PipelineSettings
from models.errors import ConfigurationError, ParseFailure, StageFailure
from models.schemas import COMPOSITION_ROLES, IMAGE_SLOT_COUNT, PipelineEntry
from utils.images import slugify
from utils.llm import chat

log = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = (
    "You are a recipe developer writing for a home-cooking website. Given SEO "
    "metadata and four image URLs, write the complete recipe as JSON with these keys:\n"
    '  "title", "slug", "category", "description", "intro" (50+ characters),\n'
    '  "story", "ingredients" (list of {"item", "amount"}),\n'
    '  "instructions" (list of {"step", "text"}, 8+ steps),\n'
    '  "prepTime", "cookTime", "servings", "tips" (list), "tools" (list),\n'
    '  "notes" (list), "questions" (list of {"question", "answer"}).\n'
    "Use the keyword naturally in the intro and the first instruction. "
    "Write in a warm, practical voice. Output JSON only."
)

REQUIRED_FIELDS = ("title", "slug", "category", "ingredients", "instructions")

# (field, kind, minimum length)
DEPTH_RULES = (
    ("ingredients", list, 1),
    ("instructions", list, 3),
)
MIN_INTRO_CHARS = 50

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


def new_recipe_id() -> str:
    return str(uuid.uuid4())


def parse_recipe(text: str) -> dict[str, Any]:
    """Parse and validate generated recipe JSON; ParseFailure on any defect."""
    try:
        recipe = json.loads(_FENCE_RE.sub("", text.strip()))
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Recipe response is not valid JSON: {e}") from e
    if not isinstance(recipe, dict):
        raise ParseFailure("Recipe response is not a JSON object")

    if "recipeId" in recipe and "id" not in recipe:
        recipe["id"] = recipe.pop("recipeId")

    missing = [f for f in REQUIRED_FIELDS if not recipe.get(f)]
    if missing:
        raise ParseFailure(f"Recipe is missing required fields: {', '.join(missing)}")

    errors = []
    for name, kind, minimum in DEPTH_RULES:
        value = recipe.get(name)
        if not isinstance(value, kind) or len(value) < minimum:
            errors.append(f"{name} needs at least {minimum} items")
    intro = recipe.get("intro")
    if intro is not None and (not isinstance(intro, str) or len(intro) < MIN_INTRO_CHARS):
        errors.append(f"intro needs at least {MIN_INTRO_CHARS} characters")
    if errors:
        raise ParseFailure(f"Recipe content is incomplete: {'; '.join(errors)}")
    return recipe


class AssemblyStage:
    """Runs the Assembly stage against the store's recipe table."""

    def __init__(self, settings: PipelineSettings, store, complete: Callable[..., str] = chat):
        self.settings = settings
        self.store = store
        self._complete = complete

    def author_for(self, entry: PipelineEntry) -> str:
        author_id = entry.author_id or self.settings.default_author_id
        if not author_id:
            raise ConfigurationError(
                "No author available: entry has no author_id and DEFAULT_AUTHOR_ID is not set"
            )
        return author_id

    def run(self, entry: PipelineEntry) -> str:
        """Return the recipe id for this entry, creating the recipe at most once."""
        if entry.produced_artifact_id:
            log.info("Entry %s already assembled as %s", entry.id, entry.produced_artifact_id)
            return entry.produced_artifact_id
        existing = self.store.get_recipe_for_entry(entry.id)
        if existing:
            log.info("Recipe %s already exists for entry %s, reusing", existing["id"], entry.id)
            return existing["id"]

        if entry.metadata is None or len(entry.valid_image_indexes()) < IMAGE_SLOT_COUNT:
            raise StageFailure("Assembly needs metadata and all 4 images")
        author_id = self.author_for(entry)
        meta = entry.metadata

        log.info("Generating recipe for: %s", meta.title)
        raw = self._complete(
            system=self.settings.recipe_prompt or DEFAULT_INSTRUCTION,
            user=(
                f"Generate complete recipe JSON:\n\n"
                f"authorId: {author_id}\n"
                f"title: {meta.title}\n"
                f"description: {meta.description}\n"
                f"keyword: {meta.keyword}\n"
                f"category: {meta.category}\n\n"
                "Images:\n"
                + "\n".join(f"{i + 1}. {slot.url}" for i, slot in enumerate(entry.images))
            ),
            model=self.settings.content_model,
            json_mode=True,
            temperature=0.9,
            max_tokens=8192,
            timeout=self.settings.assembly_timeout_sec,
        )
        recipe = parse_recipe(raw)
        recipe["id"] = new_recipe_id()
        recipe["authorId"] = author_id
        recipe["slug"] = slugify(str(recipe["slug"]))
        recipe["images"] = {
            role.value: entry.images[i].url for i, role in enumerate(COMPOSITION_ROLES)
        }
        recipe["seo"] = meta.to_dict()

        recipe_id = self.store.save_recipe(entry.id, recipe)
        log.info("Recipe saved with id %s for entry %s", recipe_id, entry.id)
        return recipe_id
