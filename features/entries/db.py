"""
Postgres artifact store for pipeline entries, recipes and beads.

Tables:
  pipeline_entries — one row per entry: seed, artifacts, execution state
  recipes          — final assembled recipes, UNIQUE on entry_id
  beads            — one row per stage execution, FK to pipeline_entries

Every write is a single autocommitted statement, so a stage's artifacts
are durable before the controller reads the entry again. Image slots are
written one array element at a time so a failure in slot 3 can never
clobber slots 1 and 2.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.extras

import config
from models.errors import RETRYABLE_KINDS
from models.schemas import (
    EntryMetadata,
    ImageSlot,
    LastError,
    PipelineEntry,
    Seed,
    Stage,
    STAGE_ORDER,
    stage_rank,
)

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: list[Any] = []


def _get_conn():
    """Get a Postgres connection (simple single-connection reuse)."""
    if _pool:
        conn = _pool[0]
        if not conn.closed:
            return conn
        _pool.clear()

    conn = psycopg2.connect(config.DATABASE_URL)
    conn.autocommit = True
    _pool.append(conn)
    return conn


@contextmanager
def get_cursor():
    """Yield a dict cursor."""
    conn = _get_conn()
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_entries (
    id                    TEXT PRIMARY KEY,
    seed_title            TEXT NOT NULL,
    seed_description      TEXT NOT NULL DEFAULT '',
    seed_keyword          TEXT NOT NULL DEFAULT '',
    seed_category         TEXT NOT NULL DEFAULT '',
    reference_image_url   TEXT,
    author_id             TEXT,
    priority              INTEGER NOT NULL DEFAULT 0,
    stage                 TEXT NOT NULL DEFAULT 'not_started',
    metadata              JSONB,
    images                JSONB NOT NULL DEFAULT '[null, null, null, null]'::jsonb,
    produced_artifact_id  TEXT,
    attempts              INTEGER NOT NULL DEFAULT 0,
    last_error            JSONB,
    locked_by             TEXT,
    locked_at             TIMESTAMPTZ,
    created_at            TIMESTAMPTZ DEFAULT now(),
    updated_at            TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS recipes (
    id              TEXT PRIMARY KEY,
    entry_id        TEXT NOT NULL UNIQUE REFERENCES pipeline_entries(id),
    author_id       TEXT NOT NULL,
    title           TEXT NOT NULL,
    slug            TEXT NOT NULL,
    data            JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS beads (
    id              TEXT PRIMARY KEY,
    entry_id        TEXT NOT NULL REFERENCES pipeline_entries(id) ON DELETE CASCADE,
    attempt         INTEGER NOT NULL,
    name            TEXT NOT NULL,
    category        TEXT NOT NULL,
    triggered_by    TEXT NOT NULL DEFAULT 'manual',
    status          TEXT NOT NULL DEFAULT 'pending',
    started_at      TIMESTAMPTZ,
    completed_at    TIMESTAMPTZ,
    duration_sec    DOUBLE PRECISION,
    input_summary   TEXT DEFAULT '',
    output_summary  TEXT DEFAULT '',
    error           TEXT,
    metadata        JSONB DEFAULT '{}'::jsonb,
    created_at      TIMESTAMPTZ DEFAULT now(),
    updated_at      TIMESTAMPTZ DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_pipeline_entries_stage ON pipeline_entries(stage);
CREATE INDEX IF NOT EXISTS idx_pipeline_entries_pending ON pipeline_entries(priority DESC, created_at ASC);
CREATE INDEX IF NOT EXISTS idx_beads_entry_id ON beads(entry_id);
CREATE INDEX IF NOT EXISTS idx_beads_created_at ON beads(created_at DESC);
"""


def init_db():
    """Create tables if they don't exist."""
    try:
        with get_cursor() as cur:
            cur.execute(SCHEMA_SQL)
        log.info("Database schema initialized")
    except Exception as e:
        log.error("Failed to initialize database: %s", e)
        raise


def _entry(row: dict | None) -> PipelineEntry | None:
    return PipelineEntry.from_dict(dict(row)) if row else None


# ── Entry CRUD ────────────────────────────────────────────────────────

def create_entry(
    seed: Seed,
    author_id: str | None = None,
    entry_id: str | None = None,
    priority: int = 0,
) -> PipelineEntry:
    """Insert a new entry in not_started."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO pipeline_entries (
                id, seed_title, seed_description, seed_keyword, seed_category,
                reference_image_url, author_id, priority
            ) VALUES (
                %(id)s, %(title)s, %(description)s, %(keyword)s, %(category)s,
                %(reference_image_url)s, %(author_id)s, %(priority)s
            )
            RETURNING *
        """, {
            "id": entry_id or uuid.uuid4().hex,
            "title": seed.title,
            "description": seed.description,
            "keyword": seed.keyword,
            "category": seed.category,
            "reference_image_url": seed.reference_image_url,
            "author_id": author_id,
            "priority": priority,
        })
        return _entry(cur.fetchone())


def get_entry(entry_id: str) -> PipelineEntry | None:
    with get_cursor() as cur:
        cur.execute("SELECT * FROM pipeline_entries WHERE id = %s", (entry_id,))
        return _entry(cur.fetchone())


def list_entries(limit: int = 50, stage: str | None = None) -> list[PipelineEntry]:
    """List entries, newest first."""
    with get_cursor() as cur:
        if stage:
            cur.execute(
                "SELECT * FROM pipeline_entries WHERE stage = %s ORDER BY created_at DESC LIMIT %s",
                (stage, limit),
            )
        else:
            cur.execute(
                "SELECT * FROM pipeline_entries ORDER BY created_at DESC LIMIT %s",
                (limit,),
            )
        return [_entry(row) for row in cur.fetchall()]


def list_retriable_entries(limit: int = 50) -> list[PipelineEntry]:
    """Entries that stopped on a retryable error, most recent failure first."""
    with get_cursor() as cur:
        cur.execute("""
            SELECT * FROM pipeline_entries
            WHERE last_error IS NOT NULL
              AND last_error->>'kind' = ANY(%s)
              AND stage <> %s
            ORDER BY last_error->>'occurred_at' DESC
            LIMIT %s
        """, ([k.value for k in RETRYABLE_KINDS], Stage.ASSEMBLY_DONE.value, limit))
        return [_entry(row) for row in cur.fetchall()]


def next_pending_entry() -> PipelineEntry | None:
    """Highest-priority, then oldest, entry that has never failed and is not complete."""
    with get_cursor() as cur:
        cur.execute("""
            SELECT * FROM pipeline_entries
            WHERE last_error IS NULL AND stage <> %s AND locked_by IS NULL
            ORDER BY priority DESC, created_at ASC
            LIMIT 1
        """, (Stage.ASSEMBLY_DONE.value,))
        return _entry(cur.fetchone())


# ── Per-entry claim ───────────────────────────────────────────────────

def claim_entry(entry_id: str, owner: str, lease_sec: int) -> bool:
    """Compare-and-set the claim; True only for the caller that won it."""
    with get_cursor() as cur:
        cur.execute("""
            UPDATE pipeline_entries
            SET locked_by = %(owner)s, locked_at = now()
            WHERE id = %(id)s
              AND (locked_by IS NULL OR locked_at < now() - make_interval(secs => %(lease)s))
            RETURNING id
        """, {"id": entry_id, "owner": owner, "lease": lease_sec})
        return cur.fetchone() is not None


def renew_claim(entry_id: str, owner: str) -> bool:
    """Restart the lease for the current owner; False once someone else holds the entry."""
    with get_cursor() as cur:
        cur.execute(
            "UPDATE pipeline_entries SET locked_at = now() "
            "WHERE id = %s AND locked_by = %s RETURNING id",
            (entry_id, owner),
        )
        return cur.fetchone() is not None


def release_entry(entry_id: str, owner: str) -> None:
    with get_cursor() as cur:
        cur.execute(
            "UPDATE pipeline_entries SET locked_by = NULL, locked_at = NULL "
            "WHERE id = %s AND locked_by = %s",
            (entry_id, owner),
        )


# ── Execution state ───────────────────────────────────────────────────

def increment_attempts(entry_id: str) -> int | None:
    """Bump the attempt counter and nothing else."""
    with get_cursor() as cur:
        cur.execute(
            "UPDATE pipeline_entries SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
            (entry_id,),
        )
        row = cur.fetchone()
        return row["attempts"] if row else None


def _lower_stages(stage: Stage) -> list[str]:
    return [s.value for s in STAGE_ORDER[:stage_rank(stage)]]


def save_metadata(entry_id: str, metadata: EntryMetadata) -> None:
    """Persist metadata and advance to metadata_done in one write."""
    with get_cursor() as cur:
        cur.execute("""
            UPDATE pipeline_entries
            SET metadata = %(metadata)s,
                stage = CASE WHEN stage = ANY(%(lower)s) THEN %(stage)s ELSE stage END,
                last_error = NULL,
                updated_at = now()
            WHERE id = %(id)s
        """, {
            "id": entry_id,
            "metadata": json.dumps(metadata.to_dict()),
            "lower": _lower_stages(Stage.METADATA_DONE),
            "stage": Stage.METADATA_DONE.value,
        })


def save_image_slot(entry_id: str, index: int, slot: ImageSlot) -> None:
    """Persist a single image slot without touching the other three."""
    with get_cursor() as cur:
        cur.execute("""
            UPDATE pipeline_entries
            SET images = jsonb_set(images, %(path)s, %(slot)s::jsonb),
                updated_at = now()
            WHERE id = %(id)s
        """, {
            "id": entry_id,
            "path": [str(index)],
            "slot": json.dumps(slot.to_dict()),
        })


def advance_stage(entry_id: str, stage: Stage) -> None:
    """Move the stage forward and clear last_error; never moves it back."""
    with get_cursor() as cur:
        cur.execute("""
            UPDATE pipeline_entries
            SET stage = %(stage)s, last_error = NULL, updated_at = now()
            WHERE id = %(id)s AND stage = ANY(%(lower)s)
        """, {"id": entry_id, "stage": stage.value, "lower": _lower_stages(stage)})


def complete_assembly(entry_id: str, artifact_id: str) -> None:
    """Set produced_artifact_id once and mark the entry assembly_done."""
    with get_cursor() as cur:
        cur.execute("""
            UPDATE pipeline_entries
            SET produced_artifact_id = %(artifact_id)s,
                stage = %(stage)s,
                last_error = NULL,
                updated_at = now()
            WHERE id = %(id)s AND produced_artifact_id IS NULL
        """, {"id": entry_id, "artifact_id": artifact_id, "stage": Stage.ASSEMBLY_DONE.value})


def record_failure(entry_id: str, error: LastError) -> None:
    with get_cursor() as cur:
        cur.execute(
            "UPDATE pipeline_entries SET last_error = %s, updated_at = now() WHERE id = %s",
            (json.dumps(error.to_dict()), entry_id),
        )


# ── Recipes ───────────────────────────────────────────────────────────

def save_recipe(entry_id: str, recipe: dict) -> str:
    """Insert the recipe for an entry; a second call returns the first recipe's id."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO recipes (id, entry_id, author_id, title, slug, data)
            VALUES (%(id)s, %(entry_id)s, %(author_id)s, %(title)s, %(slug)s, %(data)s)
            ON CONFLICT (entry_id) DO NOTHING
            RETURNING id
        """, {
            "id": recipe["id"],
            "entry_id": entry_id,
            "author_id": recipe.get("authorId", ""),
            "title": recipe.get("title", ""),
            "slug": recipe.get("slug", ""),
            "data": json.dumps(recipe),
        })
        row = cur.fetchone()
        if row:
            return row["id"]
        cur.execute("SELECT id FROM recipes WHERE entry_id = %s", (entry_id,))
        return cur.fetchone()["id"]


def get_recipe_for_entry(entry_id: str) -> dict | None:
    with get_cursor() as cur:
        cur.execute("SELECT * FROM recipes WHERE entry_id = %s", (entry_id,))
        row = cur.fetchone()
        return dict(row) if row else None


# ── Beads ─────────────────────────────────────────────────────────────

def upsert_bead(entry_id: str, bead: dict) -> None:
    """Insert or update a bead. Called on every state change."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO beads (
                id, entry_id, attempt, name, category, triggered_by, status,
                started_at, completed_at, duration_sec,
                input_summary, output_summary, error, metadata
            ) VALUES (
                %(id)s, %(entry_id)s, %(attempt)s, %(name)s, %(category)s, %(triggered_by)s, %(status)s,
                %(started_at)s, %(completed_at)s, %(duration_sec)s,
                %(input_summary)s, %(output_summary)s, %(error)s, %(metadata)s
            )
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                started_at = EXCLUDED.started_at,
                completed_at = EXCLUDED.completed_at,
                duration_sec = EXCLUDED.duration_sec,
                output_summary = EXCLUDED.output_summary,
                error = EXCLUDED.error,
                metadata = EXCLUDED.metadata,
                updated_at = now()
        """, {
            "id": bead.get("id"),
            "entry_id": entry_id,
            "attempt": bead.get("attempt", 0),
            "name": bead.get("name", ""),
            "category": bead.get("category", ""),
            "triggered_by": bead.get("triggered_by", "manual"),
            "status": bead.get("status", "pending"),
            "started_at": bead.get("started_at"),
            "completed_at": bead.get("completed_at"),
            "duration_sec": bead.get("duration_sec"),
            "input_summary": bead.get("input_summary", ""),
            "output_summary": bead.get("output_summary", ""),
            "error": bead.get("error"),
            "metadata": json.dumps(bead.get("metadata", {})),
        })


def get_beads_for_entry(entry_id: str) -> list[dict]:
    """All beads for an entry, oldest first."""
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM beads WHERE entry_id = %s ORDER BY created_at ASC",
            (entry_id,),
        )
        return [dict(row) for row in cur.fetchall()]


def list_beads(
    status: str | None = None,
    triggered_by: str | None = None,
    entry_id: str | None = None,
    date_from=None,
    date_to=None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Execution logs across entries, newest first, plus the total matching count."""
    clauses, params = [], []
    for column, value in (("status", status), ("triggered_by", triggered_by), ("entry_id", entry_id)):
        if value:
            clauses.append(f"{column} = %s")
            params.append(value)
    if date_from is not None:
        clauses.append("created_at >= %s")
        params.append(date_from)
    if date_to is not None:
        clauses.append("created_at <= %s")
        params.append(date_to)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    with get_cursor() as cur:
        cur.execute(f"SELECT count(*) AS total FROM beads {where}", params)
        total = cur.fetchone()["total"]
        cur.execute(
            f"SELECT * FROM beads {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
            params + [limit, offset],
        )
        return [dict(row) for row in cur.fetchall()], total


def delete_beads(bead_ids: list[str]) -> int:
    """Delete execution logs by id; returns how many rows went."""
    with get_cursor() as cur:
        cur.execute("DELETE FROM beads WHERE id = ANY(%s)", (list(bead_ids),))
        return cur.rowcount
