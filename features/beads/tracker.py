"""
Bead Tracker — records each stage execution of an advance call.

Every state change is handed to the persist callback immediately, so the
audit trail survives crashes. A persistence failure is logged and
otherwise ignored: beads are observability, not pipeline state.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from features.beads.models import Bead, BeadStatus
from models.schemas import TriggerSource

log = logging.getLogger(__name__)

PersistFn = Callable[[str, dict], None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BeadTracker:
    """Beads of one advance call for one entry."""

    def __init__(
        self,
        entry_id: str,
        attempt: int,
        persist: PersistFn | None = None,
        triggered_by: TriggerSource = TriggerSource.MANUAL,
    ):
        self.entry_id = entry_id
        self.attempt = attempt
        self.triggered_by = TriggerSource(triggered_by)
        self.beads: list[Bead] = []
        self._persist_fn = persist
        self._clocks: dict[str, float] = {}  # bead id → monotonic start

    def _persist(self, bead: Bead) -> None:
        if self._persist_fn is None:
            return
        try:
            self._persist_fn(self.entry_id, bead.to_row())
        except Exception as e:
            log.warning("[BEAD] Failed to persist bead %s: %s", bead.id, e)

    def create(self, label: str, step: str, input_summary: str = "") -> Bead:
        bead = Bead(
            id=f"bead-{uuid.uuid4().hex[:8]}",
            entry_id=self.entry_id,
            attempt=self.attempt,
            step=step,
            label=label,
            triggered_by=self.triggered_by,
            input_summary=input_summary,
        )
        self.beads.append(bead)
        log.info("[BEAD] %s — %s (entry %s, attempt %d, %s)",
                 bead.id, label, self.entry_id, self.attempt, self.triggered_by.value)
        self._persist(bead)
        return bead

    def start(self, bead: Bead) -> None:
        bead.status = BeadStatus.RUNNING
        bead.started_at = _now()
        self._clocks[bead.id] = time.monotonic()
        self._persist(bead)

    def complete(self, bead: Bead, output_summary: str = "", metadata: dict | None = None) -> None:
        self._finish(bead, BeadStatus.COMPLETED, metadata)
        bead.output_summary = output_summary
        log.info("[BEAD] Completed: %s — %s (%.2fs)", bead.id, bead.label, bead.duration_sec or 0)
        self._persist(bead)

    def fail(self, bead: Bead, error: str, metadata: dict | None = None) -> None:
        self._finish(bead, BeadStatus.FAILED, metadata)
        bead.error = error
        log.error("[BEAD] Failed: %s — %s: %s", bead.id, bead.label, error)
        self._persist(bead)

    def skip(self, bead: Bead, reason: str) -> None:
        self._finish(bead, BeadStatus.SKIPPED, None)
        bead.output_summary = reason
        log.warning("[BEAD] Skipped: %s — %s: %s", bead.id, bead.label, reason)
        self._persist(bead)

    def _finish(self, bead: Bead, status: BeadStatus, metadata: dict | None) -> None:
        bead.status = status
        bead.completed_at = _now()
        if metadata:
            bead.metadata.update(metadata)
        start = self._clocks.pop(bead.id, None)
        if start is not None:
            bead.duration_sec = round(time.monotonic() - start, 2)

    def summary(self) -> dict:
        statuses: dict[str, int] = {}
        for b in self.beads:
            statuses[b.status.value] = statuses.get(b.status.value, 0) + 1
        return {
            "entry_id": self.entry_id,
            "attempt": self.attempt,
            "triggered_by": self.triggered_by.value,
            "beads": len(self.beads),
            "statuses": statuses,
            "duration_sec": round(sum(b.duration_sec or 0 for b in self.beads), 2),
        }
