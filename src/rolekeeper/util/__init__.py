"""
Utility helpers for RoleKeeper.

- **logger.py**: Centralized logging configuration with coloured console output
  through prompt_toolkit, a rotating per-session log file, and suppression of
  noisy library loggers (Discord internals, aiosqlite, websockets).
"""
