import datetime

import pytest

from rolekeeper.datatypes.role_datatypes import (
    ActionState,
    GrantOutcome,
    IntervalSpec,
    RecurringSchedule,
    RoleAction,
    RoleDirection,
    RolePayload,
    ScheduledRoleAction,
    TemporaryRoleGrant,
    parse_duration,
)

UTC = datetime.timezone.utc
NOW = datetime.datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
PAYLOAD = RolePayload(role_id=5, user_ids=(1, 2), action=RoleAction.ASSIGN, reason="event")


@pytest.mark.parametrize(
    "text, kind, minutes",
    [
        ("hourly", "hourly", 60),
        ("Daily", "daily", 1440),
        ("weekly", "weekly", 10080),
        ("90", "custom", 90),
        ("30m", "custom", 30),
        ("2h", "custom", 120),
        ("1d", "custom", 1440),
        ("1w", "custom", 10080),
        ("3 hours", "custom", 180),
    ],
)
def test_interval_parse_accepts_supported_forms(text, kind, minutes):
    spec = IntervalSpec.parse(text)
    assert spec == IntervalSpec(kind=kind, minutes=minutes)


@pytest.mark.parametrize("text", ["0", "10081", "2w", "monthly", "", "-5m"])
def test_interval_parse_rejects_out_of_range_or_unknown(text):
    assert IntervalSpec.parse(text) is None


def test_interval_seconds_and_dict_form():
    spec = IntervalSpec(kind="custom", minutes=90)
    assert spec.seconds == 5400
    assert spec.delta == datetime.timedelta(minutes=90)
    assert IntervalSpec.from_dict(spec.to_dict()) == spec


def test_parse_duration():
    assert parse_duration("30m") == datetime.timedelta(minutes=30)
    assert parse_duration("12h") == datetime.timedelta(hours=12)
    assert parse_duration("2w") == datetime.timedelta(weeks=2)
    assert parse_duration("0h") is None
    assert parse_duration("soon") is None


def test_role_action_direction():
    assert RoleAction.ASSIGN.direction is RoleDirection.GRANT
    assert RoleAction.REMOVE.direction is RoleDirection.REVOKE


def test_payload_from_dict_accepts_single_user_key():
    payload = RolePayload.from_dict({"role_id": "5", "user_id": "7", "action": "remove"})
    assert payload == RolePayload(role_id=5, user_ids=(7,), action=RoleAction.REMOVE)


def test_payload_dict_form():
    assert RolePayload.from_dict(PAYLOAD.to_dict()) == PAYLOAD


def test_scheduled_action_state_and_due():
    action = ScheduledRoleAction(id="a", guild_id=1, scheduled_at=NOW, payload=PAYLOAD)
    assert action.state is ActionState.PENDING
    assert action.is_due(NOW)
    assert not action.is_due(NOW - datetime.timedelta(seconds=1))

    cancelled = ScheduledRoleAction(id="a", guild_id=1, scheduled_at=NOW, payload=PAYLOAD, cancelled=True)
    assert cancelled.state is ActionState.CANCELLED
    assert not cancelled.is_due(NOW)

    executed = ScheduledRoleAction(id="a", guild_id=1, scheduled_at=NOW, payload=PAYLOAD, executed=True)
    assert executed.state is ActionState.EXECUTED
    assert not executed.is_due(NOW)


def test_recurring_schedule_next_fire():
    interval = IntervalSpec(kind="hourly", minutes=60)
    fresh = RecurringSchedule(id="r", guild_id=1, interval=interval, payload=PAYLOAD)
    assert fresh.next_fire_at() is None
    assert fresh.is_due(NOW)

    fired = RecurringSchedule(id="r", guild_id=1, interval=interval, payload=PAYLOAD, last_executed_at=NOW)
    assert fired.next_fire_at() == NOW + datetime.timedelta(hours=1)
    assert not fired.is_due(NOW + datetime.timedelta(minutes=59))
    assert fired.is_due(NOW + datetime.timedelta(hours=1))

    cancelled = RecurringSchedule(
        id="r", guild_id=1, interval=interval, payload=PAYLOAD, active=False, cancelled=True
    )
    assert not cancelled.is_due(NOW)


def test_temporary_grant_due():
    grant = TemporaryRoleGrant(id=1, guild_id=1, user_ids=(1,), role_id=5, expires_at=NOW)
    assert grant.is_due(NOW)
    assert not grant.is_due(NOW - datetime.timedelta(seconds=1))


def test_grant_outcome_success_requires_storage():
    outcome = GrantOutcome(granted=[1])
    assert not outcome.success
    outcome.stored = True
    assert outcome.success
    assert not GrantOutcome(stored=True).success
