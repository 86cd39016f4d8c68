"""
Storage layer for RoleKeeper.

- **db_connection.py**: ``ConnectionManager``, the owner of the single
  aiosqlite connection (bounded reconnect, health check, serialised writes).
- **db_schema.py**: Table definitions and the ``CollectionSchema`` encoding
  rules for each collection.
- **store.py**: ``StoreAdapter`` and ``Collection``, document-style access with
  timeouts, timing and error translation.
- **db_cache.py**: ``InvalidatingCache`` used by every repository.
- **db_perf_mon.py**: Per-operation timing statistics.
- **normalization.py**: Instant and field normalization shared by repositories.
- **errors.py**: ``StoreError`` and its subclasses.
"""
