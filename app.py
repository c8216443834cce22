"""
FastAPI application — operator API for Recipe Pilot.

Endpoints:
  POST /pipeline/entries            — Create a pipeline entry from a seed
  GET  /pipeline/entries            — List entries
  GET  /pipeline/entries/{id}       — Entry state, next step and resume summary
  GET  /pipeline/entries/{id}/beads — Stage-run audit trail
  POST /pipeline/retry              — Retry one entry
  GET  /pipeline/retry              — Entries whose last error is retryable
  POST /pipeline/run                — Advance an entry (or the next pending one by priority)
  POST /pipeline/sweep              — Retry retriable entries in bulk
  GET  /pipeline/logs               — Execution logs across entries (filters, pagination)
  DELETE /pipeline/logs             — Delete execution logs by id
  POST /pipeline/schedules          — Create a cron schedule (Temporal)
  GET  /pipeline/schedules          — List schedules
  DELETE /pipeline/schedules/{name} — Remove a schedule
  GET  /health                      — Health check
"""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from temporalio.client import Client, ScheduleAlreadyRunningError, WorkflowFailureError
from temporalio.exceptions import ApplicationError, WorkflowAlreadyStartedError
from temporalio.service import RPCError, RPCStatusCode

import config
from features.beads import BeadStatus
from features.entries import MemoryEntryStore
from features.entries import db as entry_db
from models.errors import EntryBusyError, EntryNotFound
from models.schemas import Seed, TriggerSource
from workflows import schedules
from workflows.checkpoint import progress, resolve, resume_summary
from workflows.controller import PipelineController
from workflows.pipeline import RecipePipelineWorkflow, workflow_id
from workflows.retry import retry, sweep

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

temporal_client: Client | None = None
entry_store = entry_db
_controller: PipelineController | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global temporal_client, entry_store
    # Initialize Postgres
    try:
        entry_db.init_db()
        log.info("Postgres database initialized")
    except Exception as e:
        log.warning("Could not connect to Postgres: %s (entries will be in-memory only)", e)
        entry_store = MemoryEntryStore()
    # Temporal workers read Postgres, so an in-memory store always runs in-process
    if entry_store is entry_db:
        try:
            temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
            log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
        except Exception as e:
            log.warning("Could not connect to Temporal: %s (pipeline will run in-process)", e)
            temporal_client = None
    yield


app = FastAPI(
    title="Recipe Pilot",
    description="Checkpointed recipe content pipeline with Temporal orchestration and bead tracking",
    version="1.0.0",
    lifespan=lifespan,
)


def get_store():
    return entry_store


def get_temporal() -> Client | None:
    return temporal_client


def get_controller() -> PipelineController:
    global _controller
    if _controller is None or _controller.store is not entry_store:
        _controller = PipelineController(entry_store)
    return _controller


class CreateEntryRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    keyword: str = ""
    category: str = ""
    reference_image_url: str | None = None
    author_id: str | None = None
    priority: int = 0


class RetryRequest(BaseModel):
    entry_id: str


class RunRequest(BaseModel):
    entry_id: str | None = None
    auto_select: bool = False


class SweepRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=100)


class DeleteLogsRequest(BaseModel):
    log_ids: list[str] = Field(min_length=1)


class ScheduleRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    cron: str = Field(min_length=1)
    action: Literal["run", "sweep"] = "run"
    limit: int = Field(default=10, ge=1, le=100)


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "recipe-pilot",
        "temporal_connected": temporal_client is not None,
    }


# ── Entries ───────────────────────────────────────────────────────────

@app.post("/pipeline/entries", status_code=201)
def create_entry(req: CreateEntryRequest, store=Depends(get_store)):
    """Create a new entry in not_started from a seed lead."""
    seed = Seed(
        title=req.title,
        description=req.description,
        keyword=req.keyword,
        category=req.category,
        reference_image_url=req.reference_image_url,
    )
    entry = store.create_entry(seed, author_id=req.author_id, priority=req.priority)
    log.info("Created entry %s: %s", entry.id, entry.seed_title)
    return _serialize(entry.to_dict())


@app.get("/pipeline/entries")
def list_entries(stage: str | None = None, limit: int = 50, store=Depends(get_store)):
    entries = store.list_entries(limit=limit, stage=stage)
    return {"entries": [_serialize(e.to_dict()) for e in entries], "count": len(entries)}


@app.get("/pipeline/entries/{entry_id}")
def get_entry(entry_id: str, store=Depends(get_store)):
    """Read-only projection of an entry: never changes it."""
    entry = store.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Entry not found: {entry_id}")
    return {
        **_serialize(entry.to_dict()),
        "next_step": resolve(entry).value,
        "progress": progress(entry),
        "images_ready": len(entry.valid_image_indexes()),
        "resume_summary": resume_summary(entry),
    }


@app.get("/pipeline/entries/{entry_id}/beads")
def get_entry_beads(entry_id: str, store=Depends(get_store)):
    if store.get_entry(entry_id) is None:
        raise HTTPException(status_code=404, detail=f"Entry not found: {entry_id}")
    beads = store.get_beads_for_entry(entry_id)
    return {"entry_id": entry_id, "beads": [_serialize(b) for b in beads], "count": len(beads)}


# ── Pipeline ──────────────────────────────────────────────────────────

@app.post("/pipeline/retry")
async def retry_entry(
    req: RetryRequest,
    controller: PipelineController = Depends(get_controller),
    client: Client | None = Depends(get_temporal),
):
    """Retry one entry. Resumes from its last checkpoint."""
    return await _advance(controller, client, req.entry_id)


@app.get("/pipeline/retry")
def list_retriable(limit: int = 50, store=Depends(get_store)):
    """Entries whose last error is retryable, with what a retry would keep."""
    entries = store.list_retriable_entries(limit=limit)
    return {
        "entries": [
            {
                "entry_id": e.id,
                "title": e.seed_title,
                "stage": e.stage.value,
                "attempts": e.attempts,
                "error": e.last_error.to_dict() if e.last_error else None,
                "images_ready": len(e.valid_image_indexes()),
                "resume_summary": resume_summary(e),
            }
            for e in entries
        ],
        "count": len(entries),
    }


@app.post("/pipeline/run")
async def run_entry(
    req: RunRequest,
    controller: PipelineController = Depends(get_controller),
    client: Client | None = Depends(get_temporal),
):
    """Advance a named entry, or with auto_select the next pending one by priority."""
    if req.entry_id:
        return await _advance(controller, client, req.entry_id)
    if not req.auto_select:
        raise HTTPException(status_code=400, detail="Provide entry_id or set auto_select")

    entry = controller.store.next_pending_entry()
    if entry is None:
        return {"outcome": "idle", "message": "No pending entries"}
    log.info("Auto-selected entry %s (%s, priority %d)", entry.id, entry.seed_title, entry.priority)
    return await _advance(controller, client, entry.id)


@app.post("/pipeline/sweep")
async def sweep_entries(
    req: SweepRequest,
    controller: PipelineController = Depends(get_controller),
    client: Client | None = Depends(get_temporal),
):
    """Retry up to ``limit`` retriable entries, skipping busy ones."""
    if client is None:
        loop = asyncio.get_running_loop()
        results = await loop.run_in_executor(None, sweep, controller, req.limit)
        return {"results": results, "count": len(results)}

    results = []
    for entry in controller.store.list_retriable_entries(limit=req.limit):
        try:
            results.append(await _advance(controller, client, entry.id, TriggerSource.SWEEP))
        except HTTPException as e:
            reason = "busy" if e.status_code == 409 else "not_found"
            results.append({"entry_id": entry.id, "outcome": "skipped", "reason": reason})
    return {"results": results, "count": len(results)}


async def _advance(
    controller: PipelineController,
    client: Client | None,
    entry_id: str,
    triggered_by: TriggerSource = TriggerSource.MANUAL,
) -> dict[str, Any]:
    """Run one advance through Temporal when connected, in-process otherwise."""
    if controller.store.get_entry(entry_id) is None:
        raise HTTPException(status_code=404, detail=f"Entry not found: {entry_id}")

    if client is not None:
        try:
            return await client.execute_workflow(
                RecipePipelineWorkflow.run,
                args=[entry_id, triggered_by.value],
                id=workflow_id(entry_id),
                task_queue=config.TEMPORAL_TASK_QUEUE,
            )
        except WorkflowAlreadyStartedError:
            raise HTTPException(status_code=409, detail=f"Entry is already being advanced: {entry_id}")
        except WorkflowFailureError as e:
            cause = e.cause.cause if e.cause is not None else None
            if isinstance(cause, ApplicationError) and cause.type == "EntryBusy":
                raise HTTPException(status_code=409, detail=cause.message)
            if isinstance(cause, ApplicationError) and cause.type == "EntryNotFound":
                raise HTTPException(status_code=404, detail=cause.message)
            log.error("Advance workflow for entry %s failed: %s", entry_id, e.cause)
            return _stored_outcome(controller.store, entry_id, f"Workflow failed: {e.cause}")

    loop = asyncio.get_running_loop()
    try:
        outcome = await loop.run_in_executor(None, retry, controller, entry_id, triggered_by)
    except EntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EntryBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return outcome.to_dict()


def _stored_outcome(store, entry_id: str, detail: str) -> dict[str, Any]:
    """What the store says about an entry whose advance ended without an outcome."""
    entry = store.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Entry not found: {entry_id}")
    return {
        "outcome": "completed" if entry.produced_artifact_id else "blocked",
        "entry_id": entry.id,
        "stage": entry.stage.value,
        "attempts": entry.attempts,
        "error": entry.last_error.to_dict() if entry.last_error else None,
        "produced_artifact_id": entry.produced_artifact_id,
        "summary": resume_summary(entry),
        "detail": detail,
    }


# ── Execution logs ────────────────────────────────────────────────────

@app.get("/pipeline/logs")
def list_logs(
    status: BeadStatus | None = None,
    triggered_by: TriggerSource | None = None,
    entry_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    store=Depends(get_store),
):
    """Stage runs across all entries, newest first, with pagination."""
    logs, total = store.list_beads(
        status=status.value if status else None,
        triggered_by=triggered_by.value if triggered_by else None,
        entry_id=entry_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=(page - 1) * limit,
    )
    total_pages = math.ceil(total / limit)
    return {
        "logs": [_serialize(b) for b in logs],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_more": page < total_pages,
        },
    }


@app.delete("/pipeline/logs")
def delete_logs(req: DeleteLogsRequest, store=Depends(get_store)):
    deleted = store.delete_beads(req.log_ids)
    log.info("Deleted %d of %d execution log(s)", deleted, len(req.log_ids))
    return {"deleted": deleted}


# ── Schedules ─────────────────────────────────────────────────────────

def _require_temporal(client: Client | None) -> Client:
    if client is None:
        raise HTTPException(status_code=503, detail="Scheduled runs need a Temporal connection")
    return client


@app.post("/pipeline/schedules", status_code=201)
async def create_pipeline_schedule(req: ScheduleRequest, client: Client | None = Depends(get_temporal)):
    """Run the pipeline on a cron expression: one pending entry per tick, or a sweep."""
    client = _require_temporal(client)
    try:
        return await schedules.create_schedule(client, req.name, req.cron, req.action, req.limit)
    except ScheduleAlreadyRunningError:
        raise HTTPException(status_code=409, detail=f"Schedule already exists: {req.name}")
    except RPCError as e:
        if e.status == RPCStatusCode.INVALID_ARGUMENT:
            raise HTTPException(status_code=400, detail=e.message)
        raise


@app.get("/pipeline/schedules")
async def list_pipeline_schedules(client: Client | None = Depends(get_temporal)):
    found = await schedules.list_schedules(_require_temporal(client))
    return {"schedules": found, "count": len(found)}


@app.delete("/pipeline/schedules/{name}")
async def delete_pipeline_schedule(name: str, client: Client | None = Depends(get_temporal)):
    client = _require_temporal(client)
    try:
        await schedules.delete_schedule(client, name)
    except RPCError as e:
        if e.status == RPCStatusCode.NOT_FOUND:
            raise HTTPException(status_code=404, detail=f"Schedule not found: {name}")
        raise
    return {"deleted": name}


def _serialize(obj: Any) -> Any:
    """Make a dict JSON-serializable (handle datetimes, Decimals, etc)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj
