"""
Typed records and value objects.

- **role_datatypes.py**: Temporary grants, scheduled and recurring role
  actions, role payloads, interval specifications and duration parsing.
"""
