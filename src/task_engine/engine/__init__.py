"""Task execution engine.

Callers enqueue tasks against registered workers; a driver pass (started by
cron through ``task-engine run`` or launched right after a task is created)
runs the scheduler, claims due tasks and executes them one at a time. Live
progress goes to per-task log files, while the SQLite store keeps the
durable task state and its audit events.
"""
