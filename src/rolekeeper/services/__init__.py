"""
Command-facing services.

- **role_schedule_service.py**: Temporary grants, one-shot and recurring
  role schedules as seen by slash commands. Delegates storage to the
  repositories and role changes to the role executor.
"""
