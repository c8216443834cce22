"""
Bead records for the stage-run audit trail.

A bead is one stage execution inside one advance call, tagged with the
attempt number and with what triggered the advance. Beads are read by
operators (per entry, or across entries as execution logs) and never
drive control flow.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum

from models.schemas import TriggerSource


class BeadStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # the resolver asked for a step that already ran in this call


FINISHED_STATUSES = frozenset({BeadStatus.COMPLETED, BeadStatus.FAILED, BeadStatus.SKIPPED})


@dataclass
class Bead:
    id: str
    entry_id: str
    attempt: int
    step: str
    label: str
    triggered_by: TriggerSource = TriggerSource.MANUAL
    status: BeadStatus = BeadStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    duration_sec: float | None = None
    input_summary: str = ""
    output_summary: str = ""
    error: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def to_row(self) -> dict:
        """Column values for the beads table; ``step`` is stored as ``category``."""
        row = asdict(self)
        row["category"] = row.pop("step")
        row["name"] = row.pop("label")
        row["status"] = self.status.value
        row["triggered_by"] = self.triggered_by.value
        return row
