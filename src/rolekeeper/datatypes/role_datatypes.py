"""
Records and value types for time-based role management.

The three persisted records (:class:`TemporaryRoleGrant`,
:class:`ScheduledRoleAction`, :class:`RecurringSchedule`) are built from
decoded store documents by their repositories. :class:`RolePayload` is the
role-change instruction shared by one-shot and recurring schedules, and
:class:`IntervalSpec` describes how often a recurring schedule fires.
"""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RoleDirection(Enum):
    """Direction of a single role mutation sent to the executor."""

    GRANT = "grant"
    REVOKE = "revoke"

    def __str__(self) -> str:
        return self.value


class RoleAction(Enum):
    """What a scheduled payload does to its users."""

    ASSIGN = "assign"
    REMOVE = "remove"

    @property
    def direction(self) -> RoleDirection:
        return RoleDirection.GRANT if self is RoleAction.ASSIGN else RoleDirection.REVOKE

    def __str__(self) -> str:
        return self.value


class ActionState(Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class ExecutionStatus(Enum):
    """Outcome recorded on a completed one-shot action."""

    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class RolePayload:
    """
    A role change to apply to a set of users.

    Attributes:
        role_id: Role to assign or remove.
        user_ids: Target users.
        action: Assign or remove.
        reason: Audit-log reason passed to Discord.
    """
    role_id: int
    user_ids: Tuple[int, ...]
    action: RoleAction
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role_id": self.role_id,
            "user_ids": list(self.user_ids),
            "action": self.action.value,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolePayload":
        """Build a payload from its stored form; accepts the old single ``user_id`` key."""
        user_ids = data.get("user_ids")
        if user_ids is None:
            user_ids = [data["user_id"]] if data.get("user_id") is not None else []
        return cls(
            role_id=int(data["role_id"]),
            user_ids=tuple(int(uid) for uid in user_ids),
            action=RoleAction(data.get("action", RoleAction.ASSIGN.value)),
            reason=str(data.get("reason") or ""),
        )


_SHORTHAND_PATTERN = re.compile(r"^\s*(\d+)\s*(m|min|mins|minutes?|h|hours?|d|days?|w|weeks?)\s*$", re.IGNORECASE)
_UNIT_MINUTES = {"m": 1, "h": 60, "d": 1440, "w": 10080}
_NAMED_INTERVALS = {"hourly": 60, "daily": 1440, "weekly": 10080}

MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 10080


@dataclass(frozen=True, slots=True)
class IntervalSpec:
    """How often a recurring schedule fires, in whole minutes."""

    kind: str
    minutes: int

    @property
    def seconds(self) -> int:
        return self.minutes * 60

    @property
    def delta(self) -> datetime.timedelta:
        return datetime.timedelta(minutes=self.minutes)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "minutes": self.minutes}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntervalSpec":
        return cls(kind=str(data.get("kind", "custom")), minutes=int(data["minutes"]))

    @classmethod
    def parse(cls, text: str) -> Optional["IntervalSpec"]:
        """
        Parse ``hourly`` / ``daily`` / ``weekly``, a bare minute count
        (``"90"``) or a shorthand (``"30m"``, ``"2h"``, ``"1d"``, ``"1w"``).

        Returns ``None`` for anything else or for a custom interval outside
        1 minute to 1 week.
        """
        value = text.strip().lower()
        if value in _NAMED_INTERVALS:
            return cls(kind=value, minutes=_NAMED_INTERVALS[value])

        if value.isdigit():
            minutes = int(value)
        else:
            match = _SHORTHAND_PATTERN.match(value)
            if not match:
                return None
            minutes = int(match.group(1)) * _UNIT_MINUTES[match.group(2)[0].lower()]

        if not MIN_INTERVAL_MINUTES <= minutes <= MAX_INTERVAL_MINUTES:
            return None
        return cls(kind="custom", minutes=minutes)


def parse_duration(text: str) -> Optional[datetime.timedelta]:
    """Parse a temporary-role duration such as ``"30m"``, ``"12h"``, ``"7d"`` or ``"2w"``."""
    match = _SHORTHAND_PATTERN.match(text)
    if not match:
        return None
    amount = int(match.group(1))
    if amount <= 0:
        return None
    return datetime.timedelta(minutes=amount * _UNIT_MINUTES[match.group(2)[0].lower()])


@dataclass(frozen=True, slots=True)
class TemporaryRoleGrant:
    """
    A role given to one or more users until ``expires_at``.

    ``single_user`` marks rows keyed by one ``user_id`` (the upsert form and
    rows written before fan-out grants existed); those can only be removed
    as a whole.
    """
    id: int
    guild_id: int
    user_ids: Tuple[int, ...]
    role_id: int
    expires_at: datetime.datetime
    notify_expiry: bool = False
    failed_attempts: int = 0
    single_user: bool = False

    def is_due(self, now: datetime.datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True, slots=True)
class TemporaryRoleEntry:
    """Per-user view of a grant, as returned by ``get_all`` / ``get_by_guild``."""

    grant_id: int
    guild_id: int
    user_id: int
    role_id: int
    expires_at: datetime.datetime
    notify_expiry: bool = False


@dataclass(frozen=True, slots=True)
class ScheduledRoleAction:
    """One-shot role change; pending until executed or cancelled."""

    id: str
    guild_id: int
    scheduled_at: datetime.datetime
    payload: RolePayload
    executed: bool = False
    cancelled: bool = False
    executed_at: Optional[datetime.datetime] = None
    cancelled_at: Optional[datetime.datetime] = None
    status: Optional[ExecutionStatus] = None
    result: Optional[str] = None

    @property
    def state(self) -> ActionState:
        if self.cancelled:
            return ActionState.CANCELLED
        if self.executed:
            return ActionState.EXECUTED
        return ActionState.PENDING

    def is_due(self, now: datetime.datetime) -> bool:
        return self.state is ActionState.PENDING and self.scheduled_at <= now


@dataclass(frozen=True, slots=True)
class RecurringSchedule:
    """Role change that re-fires every ``interval`` after its last execution."""

    id: str
    guild_id: int
    interval: IntervalSpec
    payload: RolePayload
    active: bool = True
    cancelled: bool = False
    last_executed_at: Optional[datetime.datetime] = None
    cancelled_at: Optional[datetime.datetime] = None

    def next_fire_at(self) -> Optional[datetime.datetime]:
        """``None`` means fire immediately (never executed)."""
        if self.last_executed_at is None:
            return None
        return self.last_executed_at + self.interval.delta

    def is_due(self, now: datetime.datetime) -> bool:
        if not self.active or self.cancelled:
            return False
        next_fire = self.next_fire_at()
        return next_fire is None or next_fire <= now


@dataclass(frozen=True, slots=True)
class ExecutionSummary:
    """How many users a payload run reached."""

    succeeded: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def status(self) -> ExecutionStatus:
        if not self.failed:
            return ExecutionStatus.COMPLETED
        if self.succeeded:
            return ExecutionStatus.PARTIAL
        return ExecutionStatus.FAILED

    def describe(self) -> str:
        return f"Applied to {self.succeeded}/{self.total} user(s)"


@dataclass(frozen=True, slots=True)
class SupporterRole:
    """A supporter role held without expiry until it is explicitly removed."""

    guild_id: int
    user_id: int
    role_id: int
    assigned_at: datetime.datetime
    reason: str = ""


@dataclass(slots=True)
class GrantOutcome:
    """Result of granting a temporary role to several users at once."""

    granted: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    stored: bool = False
    expires_at: Optional[datetime.datetime] = None

    @property
    def success(self) -> bool:
        return bool(self.granted) and self.stored
