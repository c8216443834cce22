"""
Beads feature — tracks each stage execution of an entry as a discrete unit of work.

Public API:
    from features.beads import BeadTracker, Bead, BeadStatus
"""

from features.beads.models import Bead, BeadStatus
from features.beads.tracker import BeadTracker

__all__ = ["Bead", "BeadStatus", "BeadTracker"]
