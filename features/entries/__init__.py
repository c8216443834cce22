"""
Entries feature — the durable checkpoint ledger for pipeline entries.

Two stores expose the same operations: the Postgres module ``db`` and
``MemoryEntryStore`` for local runs and tests.

Public API:
    from features.entries import db as entry_db
    from features.entries import MemoryEntryStore
"""

from features.entries import db
from features.entries.memory import MemoryEntryStore

__all__ = ["db", "MemoryEntryStore"]
