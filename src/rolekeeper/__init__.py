"""
RoleKeeper - time-based Discord role management

RoleKeeper grants and removes Discord roles on a schedule and keeps doing so
across restarts and storage outages.

Core Components:

- **Temporary roles**: A role is granted now and removed automatically when
  its duration runs out, optionally with a DM to the member
- **Scheduled actions**: A one-shot assign/remove that runs once at a chosen
  instant and can be cancelled until then
- **Recurring schedules**: An assign/remove re-applied every interval
  (hourly, daily, weekly or a custom number of minutes)
- **Storage**: A single aiosqlite connection with bounded reconnects,
  per-collection repositories and invalidating read caches

Usage:
    from rolekeeper.main import main
    main()
"""
