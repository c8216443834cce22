"""
Features package — each sub-package encapsulates a self-contained feature.

Convention:
  features/<feature_name>/
    __init__.py      — public API re-exports
    models.py        — data models specific to this feature
    db.py            — Postgres layer (if applicable)
    memory.py        — in-memory twin of db.py (if applicable)
    tracker.py       — runtime tracking (if applicable)
"""
