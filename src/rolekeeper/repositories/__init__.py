"""
Repositories for the three role collections.

- **temporary_role_repo.py**: Temporary role grants, single-user and fan-out,
  with expiry queries and bounded removal retries.
- **scheduled_role_repo.py**: One-shot scheduled role actions and their
  pending → executed / cancelled transitions.
- **recurring_schedule_repo.py**: Recurring role schedules and the
  last-execution bookkeeping that drives their next fire time.

Every repository reads through its own invalidating cache, never caches due
queries, and returns a safe default (empty, ``False`` or ``None``) when the
store fails; the failure is logged.
"""

from rolekeeper.repositories.recurring_schedule_repo import RecurringScheduleRepository
from rolekeeper.repositories.scheduled_role_repo import ScheduledRoleRepository
from rolekeeper.repositories.temporary_role_repo import TemporaryRoleRepository

__all__ = [
    "RecurringScheduleRepository",
    "ScheduledRoleRepository",
    "TemporaryRoleRepository",
]
