"""
Shared fixtures for the Recipe Pilot test suite.

Everything runs against the in-memory store and scripted fake providers,
so no test needs Postgres, Temporal or an OpenAI key.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from functools import partial
from types import SimpleNamespace

import pytest
from temporalio.client import ScheduleAlreadyRunningError
from temporalio.service import RPCError, RPCStatusCode

from activities.assembly import AssemblyStage
from activities.images import ImageStage
from activities.metadata import MetadataStage
from config import PipelineSettings
from features.entries import MemoryEntryStore
from models.schemas import (
    COMPOSITION_ROLES,
    EntryMetadata,
    ImageSlot,
    PipelineEntry,
    Stage,
)
from workflows.controller import PipelineController


# ---------------------------------------------------------------------------
# Canned provider payloads
# ---------------------------------------------------------------------------

METADATA_JSON = json.dumps({
    "title": "Moist Chai Spice Cake With Brown Butter Glaze",
    "description": "A tender chai cake with cardamom, cinnamon and ginger, finished "
                   "with a nutty brown butter glaze. Easy to bake, perfect for fall.",
    "keyword": "chai cake",
    "category": "Dessert",
})

RECIPE_JSON = json.dumps({
    "title": "Moist Chai Spice Cake",
    "slug": "Moist Chai Spice Cake!",
    "category": "Dessert",
    "description": "A tender chai spiced cake.",
    "intro": "This chai cake tastes like your favourite cup of spiced tea, baked into a soft crumb.",
    "ingredients": [{"item": "flour", "amount": "2 cups"}, {"item": "sugar", "amount": "1 cup"}],
    "instructions": [
        {"step": 1, "text": "Heat the oven."},
        {"step": 2, "text": "Mix the dry ingredients."},
        {"step": 3, "text": "Bake for 35 minutes."},
    ],
})


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------

class FakeContentProvider:
    """Returns scripted responses in order; exceptions in the script are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def __call__(self, **kwargs) -> str:
        self.calls.append(kwargs)
        if not self.responses:
            raise AssertionError("content provider called more often than scripted")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


_SLOT_RE = re.compile(r"IMAGE (\d) OF 4")


class FakeImageProvider:
    """Counts calls per slot; ``failures`` maps a slot number to the exception it raises."""

    def __init__(self, failures: dict | None = None):
        self.failures = dict(failures or {})
        self.slots: list[int] = []
        self.calls: list[dict] = []

    def __call__(self, prompt, reference=None, timeout=None, model=None, size=None) -> bytes:
        slot = int(_SLOT_RE.search(prompt).group(1))
        self.slots.append(slot)
        self.calls.append({"slot": slot, "reference": reference, "timeout": timeout,
                           "model": model, "size": size, "prompt": prompt})
        if slot in self.failures:
            raise self.failures.pop(slot)
        return f"image-{slot}".encode()


def fake_save(data, filename, upload_dir, url_prefix) -> str:
    return f"{url_prefix}/{filename}"


def no_reference(url, timeout):
    return None


class FakeTemporalClient:
    """Stands in for ``temporalio.client.Client``: workflow runs end in ``failure``, schedules live in a dict."""

    def __init__(self, failure: Exception | None = None, result: dict | None = None):
        self.failure = failure
        self.result = result
        self.started: list[tuple[str, list]] = []
        self.schedules: dict = {}

    async def execute_workflow(self, workflow, *, args, id, task_queue):
        self.started.append((id, list(args)))
        if self.failure is not None:
            raise self.failure
        return self.result

    async def create_schedule(self, id, schedule):
        if id in self.schedules:
            raise ScheduleAlreadyRunningError()
        self.schedules[id] = schedule

    async def list_schedules(self):
        async def listing():
            for schedule_id, schedule in list(self.schedules.items()):
                yield SimpleNamespace(
                    id=schedule_id,
                    schedule=SimpleNamespace(state=schedule.state),
                    info=SimpleNamespace(next_action_times=[datetime(2026, 1, 2, 3, 0, tzinfo=timezone.utc)]),
                )
        return listing()

    def get_schedule_handle(self, id):
        return SimpleNamespace(delete=partial(self._delete, id))

    async def _delete(self, id):
        if self.schedules.pop(id, None) is None:
            raise RPCError("schedule not found", RPCStatusCode.NOT_FOUND, b"")


# ---------------------------------------------------------------------------
# Settings, store and controller
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return PipelineSettings(
        upload_dir=tmp_path / "uploads",
        upload_url_prefix="/uploads/test",
        watermark_domain="example.com",
        default_author_id="author-1",
    )


@pytest.fixture
def store():
    return MemoryEntryStore()


@pytest.fixture
def make_controller(settings, store):
    """Build a controller wired to fakes; returns (controller, content, images)."""

    def _make(content=None, images=None, fetch=no_reference, controller_settings=None):
        s = controller_settings or settings
        content = content if content is not None else FakeContentProvider(METADATA_JSON, RECIPE_JSON)
        images = images if images is not None else FakeImageProvider()
        controller = PipelineController(
            store,
            settings=s,
            metadata_stage=MetadataStage(s, complete=content),
            image_stage=ImageStage(s, generate=images, fetch=fetch, save=fake_save),
            assembly_stage=AssemblyStage(s, store, complete=content),
        )
        return controller, content, images

    return _make


# ---------------------------------------------------------------------------
# Entry builders
# ---------------------------------------------------------------------------

def make_metadata() -> EntryMetadata:
    return EntryMetadata(
        title="Moist Chai Spice Cake",
        description="A tender chai cake with a brown butter glaze.",
        keyword="chai cake",
        category="Dessert",
    )


def make_slot(index: int, url: str | None = None) -> ImageSlot:
    return ImageSlot(
        url=url or f"/uploads/test/existing-{index + 1}.webp",
        prompt_used=f"existing prompt {index + 1}",
        composition_role=COMPOSITION_ROLES[index],
    )


def make_entry(
    entry_id: str = "entry-0001",
    stage: Stage = Stage.NOT_STARTED,
    metadata: bool = False,
    image_count: int = 0,
    artifact: str | None = None,
    **overrides,
) -> PipelineEntry:
    images = [make_slot(i) if i < image_count else None for i in range(4)]
    fields = {"created_at": "2026-01-01T00:00:00+00:00", "updated_at": "2026-01-01T00:00:00+00:00"}
    fields.update(overrides)
    return PipelineEntry(
        id=entry_id,
        seed_title="Chai Cake",
        seed_description="Spiced cake from a viral post",
        seed_keyword="chai cake",
        seed_category="Dessert",
        stage=stage,
        metadata=make_metadata() if metadata else None,
        images=images,
        produced_artifact_id=artifact,
        **fields,
    )
