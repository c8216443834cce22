"""
In-memory artifact store with the same operations as ``features.entries.db``.

Used for local runs without Postgres and by the test suite. Entries are
deep-copied on the way in and out so callers never share state with the
store, which is what a durable store gives them for free.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from datetime import datetime, timezone

from models.schemas import (
    EntryMetadata,
    ImageSlot,
    LastError,
    PipelineEntry,
    Seed,
    Stage,
    stage_rank,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MemoryEntryStore:
    """Thread-safe dict-backed store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._entries: dict[str, PipelineEntry] = {}
        self._claims: dict[str, tuple[str, float]] = {}  # entry_id → (owner, monotonic time)
        self._recipes: dict[str, dict] = {}  # entry_id → recipe row
        self._beads: dict[str, dict] = {}
        self.writes: list[tuple[str, str]] = []  # (operation, entry_id), for inspection

    def init_db(self) -> None:
        pass

    def _log_write(self, operation: str, entry_id: str) -> None:
        self.writes.append((operation, entry_id))

    def _get(self, entry_id: str) -> PipelineEntry | None:
        return self._entries.get(entry_id)

    # ── Entry CRUD ──

    def create_entry(
        self,
        seed: Seed,
        author_id: str | None = None,
        entry_id: str | None = None,
        priority: int = 0,
    ) -> PipelineEntry:
        with self._lock:
            now = _now()
            entry = PipelineEntry(
                id=entry_id or uuid.uuid4().hex,
                seed_title=seed.title,
                seed_description=seed.description,
                seed_keyword=seed.keyword,
                seed_category=seed.category,
                reference_image_url=seed.reference_image_url,
                author_id=author_id,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            self._entries[entry.id] = entry
            self._log_write("create_entry", entry.id)
            return copy.deepcopy(entry)

    def put_entry(self, entry: PipelineEntry) -> None:
        """Seed the store with an entry in an arbitrary state."""
        with self._lock:
            self._entries[entry.id] = copy.deepcopy(entry)

    def get_entry(self, entry_id: str) -> PipelineEntry | None:
        with self._lock:
            return copy.deepcopy(self._get(entry_id))

    def list_entries(self, limit: int = 50, stage: str | None = None) -> list[PipelineEntry]:
        with self._lock:
            entries = [e for e in self._entries.values() if not stage or e.stage.value == stage]
            entries.sort(key=lambda e: e.created_at, reverse=True)
            return copy.deepcopy(entries[:limit])

    def list_retriable_entries(self, limit: int = 50) -> list[PipelineEntry]:
        with self._lock:
            entries = [
                e for e in self._entries.values()
                if e.last_error is not None
                and e.last_error.retryable
                and e.stage is not Stage.ASSEMBLY_DONE
            ]
            entries.sort(key=lambda e: e.last_error.occurred_at, reverse=True)
            return copy.deepcopy(entries[:limit])

    def next_pending_entry(self) -> PipelineEntry | None:
        with self._lock:
            pending = [
                e for e in self._entries.values()
                if e.last_error is None
                and e.stage is not Stage.ASSEMBLY_DONE
                and e.id not in self._claims
            ]
            pending.sort(key=lambda e: (-e.priority, e.created_at))
            return copy.deepcopy(pending[0]) if pending else None

    # ── Per-entry claim ──

    def claim_entry(self, entry_id: str, owner: str, lease_sec: int) -> bool:
        with self._lock:
            if entry_id not in self._entries:
                return False
            held = self._claims.get(entry_id)
            if held and time.monotonic() - held[1] < lease_sec:
                return False
            self._claims[entry_id] = (owner, time.monotonic())
            return True

    def renew_claim(self, entry_id: str, owner: str) -> bool:
        with self._lock:
            held = self._claims.get(entry_id)
            if not held or held[0] != owner:
                return False
            self._claims[entry_id] = (owner, time.monotonic())
            return True

    def release_entry(self, entry_id: str, owner: str) -> None:
        with self._lock:
            held = self._claims.get(entry_id)
            if held and held[0] == owner:
                del self._claims[entry_id]

    # ── Execution state ──

    def increment_attempts(self, entry_id: str) -> int | None:
        with self._lock:
            entry = self._get(entry_id)
            if entry is None:
                return None
            entry.attempts += 1
            self._log_write("increment_attempts", entry_id)
            return entry.attempts

    def _raise_stage(self, entry: PipelineEntry, stage: Stage) -> None:
        if stage_rank(stage) > stage_rank(entry.stage):
            entry.stage = stage

    def save_metadata(self, entry_id: str, metadata: EntryMetadata) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            entry.metadata = copy.deepcopy(metadata)
            self._raise_stage(entry, Stage.METADATA_DONE)
            entry.last_error = None
            entry.updated_at = _now()
            self._log_write("save_metadata", entry_id)

    def save_image_slot(self, entry_id: str, index: int, slot: ImageSlot) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            entry.images[index] = copy.deepcopy(slot)
            entry.updated_at = _now()
            self._log_write("save_image_slot", entry_id)

    def advance_stage(self, entry_id: str, stage: Stage) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            if stage_rank(stage) <= stage_rank(entry.stage):
                return
            entry.stage = stage
            entry.last_error = None
            entry.updated_at = _now()
            self._log_write("advance_stage", entry_id)

    def complete_assembly(self, entry_id: str, artifact_id: str) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            if entry.produced_artifact_id is not None:
                return
            entry.produced_artifact_id = artifact_id
            entry.stage = Stage.ASSEMBLY_DONE
            entry.last_error = None
            entry.updated_at = _now()
            self._log_write("complete_assembly", entry_id)

    def record_failure(self, entry_id: str, error: LastError) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            entry.last_error = copy.deepcopy(error)
            entry.updated_at = _now()
            self._log_write("record_failure", entry_id)

    # ── Recipes ──

    def save_recipe(self, entry_id: str, recipe: dict) -> str:
        with self._lock:
            existing = self._recipes.get(entry_id)
            if existing:
                return existing["id"]
            self._recipes[entry_id] = {
                "id": recipe["id"],
                "entry_id": entry_id,
                "author_id": recipe.get("authorId", ""),
                "title": recipe.get("title", ""),
                "slug": recipe.get("slug", ""),
                "data": copy.deepcopy(recipe),
                "created_at": _now(),
            }
            self._log_write("save_recipe", entry_id)
            return recipe["id"]

    def get_recipe_for_entry(self, entry_id: str) -> dict | None:
        with self._lock:
            return copy.deepcopy(self._recipes.get(entry_id))

    # ── Beads ──

    def upsert_bead(self, entry_id: str, bead: dict) -> None:
        with self._lock:
            stored = self._beads.setdefault(bead["id"], {"created_at": _now()})
            stored.update(copy.deepcopy(bead))
            stored["entry_id"] = entry_id

    def get_beads_for_entry(self, entry_id: str) -> list[dict]:
        with self._lock:
            beads = [b for b in self._beads.values() if b["entry_id"] == entry_id]
            return copy.deepcopy(sorted(beads, key=lambda b: b["created_at"]))

    def list_beads(
        self,
        status: str | None = None,
        triggered_by: str | None = None,
        entry_id: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict], int]:
        date_from, date_to = _utc(date_from), _utc(date_to)
        with self._lock:
            beads = [
                b for b in self._beads.values()
                if (not status or b.get("status") == status)
                and (not triggered_by or b.get("triggered_by") == triggered_by)
                and (not entry_id or b["entry_id"] == entry_id)
                and (date_from is None or datetime.fromisoformat(b["created_at"]) >= date_from)
                and (date_to is None or datetime.fromisoformat(b["created_at"]) <= date_to)
            ]
            beads.sort(key=lambda b: b["created_at"], reverse=True)
            return copy.deepcopy(beads[offset:offset + limit]), len(beads)

    def delete_beads(self, bead_ids: list[str]) -> int:
        with self._lock:
            deleted = [bead_id for bead_id in set(bead_ids) if self._beads.pop(bead_id, None)]
            return len(deleted)
