"""
Time-driven execution of role changes.

- **lifecycle_scheduler.py**: Polling loop that expires temporary role grants,
  runs due one-shot role actions and fires recurring schedules. State lives in
  SQLite, so restarts pick up where the last tick left off.
"""
