"""
Field normalization shared by every repository.

Instants are handled as timezone-aware UTC ``datetime`` objects in Python and
stored as INTEGER unix seconds, so comparisons in SQL are plain integer
comparisons. Older rows may still carry ISO-8601 text or millisecond
timestamps; :func:`to_instant` upgrades all of those shapes before any
comparison or arithmetic happens.
"""

from __future__ import annotations

import datetime
import json
import math
from typing import Any, Dict, Optional

from rolekeeper.util.logger import get_logger

logger = get_logger("normalization")

# Anything above this is a millisecond timestamp (year 33658 in seconds).
_MILLISECOND_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime.datetime:
    """Current instant, timezone-aware and truncated to whole seconds."""
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def to_instant(value: Any) -> Optional[datetime.datetime]:
    """
    Convert a date-like value to a UTC ``datetime``.

    Accepts ``datetime`` (naive values are taken as UTC), ``int``/``float``
    unix seconds or milliseconds, numeric strings, and ISO-8601 strings
    (a trailing ``Z`` is accepted). Returns ``None`` for ``None``, empty
    strings and values that cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.timezone.utc)
        return value.astimezone(datetime.timezone.utc)

    if isinstance(value, (int, float)):
        seconds = float(value)
        if abs(seconds) >= _MILLISECOND_THRESHOLD:
            seconds /= 1000.0
        return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return to_instant(float(text))
        except ValueError:
            pass
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return to_instant(datetime.datetime.fromisoformat(text))
        except ValueError:
            logger.warning("[NORMALIZE] Unparseable instant %r", value)
            return None

    logger.warning("[NORMALIZE] Unsupported instant type %s", type(value).__name__)
    return None


def to_unix(value: Any) -> Optional[int]:
    """
    Convert a date-like value to INTEGER unix seconds, or ``None``.

    Fractions round up so a stored trigger never fires before its instant.
    """
    instant = to_instant(value)
    if instant is None:
        return None
    return math.ceil(instant.timestamp())


def to_bool(value: Any) -> bool:
    """SQLite stores booleans as 0/1; legacy rows may hold text."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def to_id_list(value: Any) -> list[int]:
    """Decode a JSON (or already decoded) list of snowflakes into ints."""
    if value is None:
        return []
    if isinstance(value, str):
        value = json.loads(value)
    return [int(item) for item in value]


def stamp(document: Dict[str, Any], *, created: bool = False, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    """Return a copy of ``document`` with ``updated_at`` (and ``created_at``) set."""
    moment = to_unix(now or utcnow())
    stamped = dict(document)
    stamped["updated_at"] = moment
    if created:
        stamped["created_at"] = moment
    return stamped

