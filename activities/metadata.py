"""
Stage: Metadata — turns the seed lead into SEO title, description,
keyword and category with a single content-provider call.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Callable

from config import PipelineSettings
from models.errors import ParseFailure
from models.schemas import EntryMetadata, Seed
from utils.llm import chat

log = logging.getLogger(__name__)

JSON_FORMAT = (
    "Respond with JSON in exactly this format:\n"
    '{"title": "...", "description": "...", "keyword": "...", "category": "..."}'
)

DEFAULT_INSTRUCTION = (
    "You are the SEO editor of a recipe website. You receive a trending recipe "
    "lead (title, description, keyword, category) scraped from social media and "
    "turn it into search-optimised metadata for a new recipe page.\n\n"
    "Rules:\n"
    "- title: 40-60 characters, contains the keyword, no clickbait, no emoji\n"
    "- description: 140-160 characters, describes the dish and why to make it\n"
    "- keyword: the 2-5 word lowercase phrase people actually search for\n"
    "- category: a single recipe category such as Dessert, Breakfast, Main Dish, "
    "Soup, Salad, Snack, Drink or Bread\n\n"
    + JSON_FORMAT
)

# Every response shape we accept, in order of preference. Anything else
# is a ParseFailure.
ACCEPTED_SHAPES = (
    ("title", "description", "keyword", "category"),
    ("seoTitle", "seoDescription", "seoKeyword", "seoCategory"),
    ("seo_title", "seo_description", "seo_keyword", "seo_category"),
)
WRAPPER_KEYS = ("metadata", "seo", "result")

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


def _load_json(text: str) -> object:
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise ParseFailure("No JSON object found in metadata response")
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ParseFailure(f"Metadata response is not valid JSON: {e}") from e


def _match_shape(candidate: dict) -> EntryMetadata | None:
    for keys in ACCEPTED_SHAPES:
        values = [candidate.get(k) for k in keys]
        if all(isinstance(v, str) and v.strip() for v in values):
            return EntryMetadata(*(v.strip() for v in values))
    return None


def decode_metadata(text: str) -> EntryMetadata:
    """Decode a provider response into metadata or raise ParseFailure."""
    data = _load_json(text)
    if not isinstance(data, dict):
        raise ParseFailure(f"Metadata response is a JSON {type(data).__name__}, expected an object")

    candidates = [data] + [data[k] for k in WRAPPER_KEYS if isinstance(data.get(k), dict)]
    for candidate in candidates:
        metadata = _match_shape(candidate)
        if metadata is not None:
            return metadata
    raise ParseFailure(
        f"Metadata response has none of the accepted shapes (keys: {sorted(data)[:10]})"
    )


class MetadataStage:
    """Runs the Metadata stage. Cheap, so it is always safe to run again."""

    def __init__(self, settings: PipelineSettings, complete: Callable[..., str] = chat):
        self.settings = settings
        self._complete = complete

    def instruction(self) -> str:
        if self.settings.metadata_prompt:
            return f"{self.settings.metadata_prompt}\n\n{JSON_FORMAT}"
        return DEFAULT_INSTRUCTION

    def run(self, seed: Seed) -> EntryMetadata:
        log.info("Generating SEO metadata for: %s", seed.title)
        raw = self._complete(
            system=self.instruction(),
            user=(
                f"Title: {seed.title}\n"
                f"Description: {seed.description or '(none)'}\n"
                f"Keyword: {seed.keyword or '(none)'}\n"
                f"Category: {seed.category or '(none)'}"
            ),
            model=self.settings.content_model,
            json_mode=True,
            temperature=0.4,
            max_tokens=800,
            timeout=self.settings.metadata_timeout_sec,
        )
        metadata = decode_metadata(raw)
        log.info("SEO metadata generated: %s [%s]", metadata.title, metadata.keyword)
        return metadata
