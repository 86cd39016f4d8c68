"""
Application configuration.

- **app_configuration.py**: ``AppConfig``, a read-only view of
  ``config/app_config.yml`` (database, cache and scheduler settings) loaded
  under a shared ``fcntl`` lock.
"""
