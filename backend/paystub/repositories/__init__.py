"""
Repositories package — data-access layer.

Each repository file handles all DB operations for one domain entity.
Repositories do NOT handle task dispatch or business logic beyond
basic data integrity.

Convention:
    - One file per aggregate root (e.g., jobs.py, work_records.py)
    - All functions accept `AsyncSession` as the first argument
    - Use `flush()` internally; the unit-of-work owner (pipeline engine,
      dispatcher, sweeps) decides when to commit
"""
