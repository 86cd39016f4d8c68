"""
Discord side effects for role management.

- **role_executor.py**: The ``RoleExecutor`` protocol the scheduler and
  service depend on, and ``DiscordRoleExecutor``, which adds/removes roles
  and sends expiry DMs through py-cord.
"""
