"""Job orchestration core for rebase jobs.

Jobs move through a persisted lifecycle (pending, queued, running, then one of
success, failed or cancelled). Admission charges per-window budgets before a job
is queued; workers take jobs by priority, hold an expiring per-repository lease
while they rebase, and hand conflicts to ``rebase_pilot.resolution``.

Everything runs on one machine against one SQLite database: separate CLI and
worker processes coordinate through job rows, job events, usage counters and
lease rows rather than through a broker.
"""
