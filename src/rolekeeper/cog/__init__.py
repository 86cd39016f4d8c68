"""
py-cord cogs.

- **scheduler_cog.py**: ``RoleSchedulerCog``, which runs the lifecycle
  scheduler for the lifetime of the bot connection.
"""
