import datetime

import pytest

from conftest import GUILD_ID, NOW, ROLE_ID, execute_sql
from rolekeeper.datatypes.role_datatypes import ActionState, ExecutionStatus, RoleAction, RolePayload

PAYLOAD = RolePayload(role_id=ROLE_ID, user_ids=(1, 2), action=RoleAction.ASSIGN, reason="launch")


async def _create(repo, schedule_id: str, **offset) -> None:
    created = await repo.create(
        {
            "id": schedule_id,
            "guild_id": GUILD_ID,
            "scheduled_at": NOW + datetime.timedelta(**offset),
            "payload": PAYLOAD,
        }
    )
    assert created is True


@pytest.mark.asyncio
async def test_find_due_returns_pending_past_actions(scheduled_roles):
    await _create(scheduled_roles, "past", seconds=-1)
    await _create(scheduled_roles, "now", seconds=0)
    await _create(scheduled_roles, "future", minutes=5)

    due = await scheduled_roles.find_due(NOW)

    assert {action.id for action in due} == {"past", "now"}
    assert due[0].payload == PAYLOAD


@pytest.mark.asyncio
async def test_mark_executed_is_a_one_time_transition(scheduled_roles):
    await _create(scheduled_roles, "a1", seconds=-1)

    assert await scheduled_roles.mark_executed("a1", NOW) is True
    assert await scheduled_roles.mark_executed("a1", NOW) is False
    assert await scheduled_roles.find_due(NOW) == []

    action = await scheduled_roles.get_by_id("a1")
    assert action.state is ActionState.EXECUTED
    assert action.executed_at == NOW


@pytest.mark.asyncio
async def test_cancel_and_execute_exclude_each_other(scheduled_roles):
    await _create(scheduled_roles, "c1", minutes=1)
    await _create(scheduled_roles, "e1", minutes=1)

    assert await scheduled_roles.cancel("c1", NOW) is True
    assert await scheduled_roles.mark_executed("c1", NOW) is False

    assert await scheduled_roles.mark_executed("e1", NOW) is True
    assert await scheduled_roles.cancel("e1", NOW) is False

    assert (await scheduled_roles.get_by_id("c1")).state is ActionState.CANCELLED
    assert (await scheduled_roles.get_by_id("e1")).state is ActionState.EXECUTED


@pytest.mark.asyncio
async def test_get_by_id_can_bypass_the_cache(connection, scheduled_roles):
    await _create(scheduled_roles, "x1", seconds=-1)
    assert (await scheduled_roles.get_by_id("x1")).state is ActionState.PENDING

    # Written behind the repository's back, so the cache is not invalidated.
    await execute_sql(connection, "UPDATE scheduled_roles SET cancelled = 1 WHERE id = 'x1'")

    assert (await scheduled_roles.get_by_id("x1")).state is ActionState.PENDING
    assert (await scheduled_roles.get_by_id("x1", use_cache=False)).state is ActionState.CANCELLED


@pytest.mark.asyncio
async def test_legacy_text_time_is_normalized(connection, scheduled_roles):
    await execute_sql(
        connection,
        "INSERT INTO scheduled_roles (id, guild_id, scheduled_at, payload) VALUES (?, ?, ?, ?)",
        ("old", GUILD_ID, "2025-06-01T10:00:00.000Z", '{"role_id": 5, "userIds": [], "user_id": 9}'),
    )

    (action,) = await scheduled_roles.find_due(NOW)

    assert action.id == "old"
    assert action.scheduled_at == datetime.datetime(2025, 6, 1, 10, tzinfo=datetime.timezone.utc)
    assert action.payload.user_ids == (9,)


@pytest.mark.asyncio
async def test_malformed_payload_is_skipped(connection, scheduled_roles):
    await execute_sql(
        connection,
        "INSERT INTO scheduled_roles (id, guild_id, scheduled_at, payload) VALUES (?, ?, ?, ?)",
        ("bad", GUILD_ID, 0, "{not json"),
    )
    await _create(scheduled_roles, "good", seconds=-1)

    assert [action.id for action in await scheduled_roles.find_due(NOW)] == ["good"]
    assert set(await scheduled_roles.get_all()) == {"good"}


@pytest.mark.asyncio
async def test_update_and_delete(scheduled_roles):
    await _create(scheduled_roles, "u1", minutes=10)

    assert await scheduled_roles.update("u1", {"scheduled_at": NOW - datetime.timedelta(minutes=1)}) is True
    assert [action.id for action in await scheduled_roles.find_due(NOW)] == ["u1"]
    assert await scheduled_roles.update("missing", {"scheduled_at": NOW}) is False

    assert await scheduled_roles.delete("u1") is True
    assert await scheduled_roles.get_by_id("u1") is None
    assert await scheduled_roles.delete("u1") is True


@pytest.mark.asyncio
async def test_get_by_guild_lists_only_that_guild(scheduled_roles):
    await _create(scheduled_roles, "g1", minutes=1)
    await scheduled_roles.create(
        {"id": "other", "guild_id": GUILD_ID + 1, "scheduled_at": NOW, "payload": PAYLOAD}
    )

    assert [action.id for action in await scheduled_roles.get_by_guild(GUILD_ID)] == ["g1"]


@pytest.mark.asyncio
async def test_store_unavailable_returns_safe_defaults(connection, scheduled_roles):
    await connection.close()

    assert await scheduled_roles.get_all() == {}
    assert await scheduled_roles.find_due(NOW) == []
    assert await scheduled_roles.get_by_id("a", use_cache=False) is None
    assert await scheduled_roles.mark_executed("a") is False
    assert await scheduled_roles.cancel("a") is False
    assert await scheduled_roles.create(
        {"id": "a", "guild_id": GUILD_ID, "scheduled_at": NOW, "payload": PAYLOAD}
    ) is False


@pytest.mark.asyncio
async def test_malformed_input_is_rejected(scheduled_roles):
    assert await scheduled_roles.create({"id": "no-payload", "guild_id": GUILD_ID, "scheduled_at": NOW}) is False
    assert await scheduled_roles.create(
        {"id": "bad-role", "guild_id": GUILD_ID, "scheduled_at": NOW, "payload": {"role_id": "abc", "user_ids": [1]}}
    ) is False
    assert await scheduled_roles.create(
        {"guild_id": GUILD_ID, "scheduled_at": NOW, "payload": PAYLOAD}
    ) is False

    await _create(scheduled_roles, "ok", minutes=1)
    assert await scheduled_roles.update("ok", {"payload": {"user_ids": [1]}}) is False
    assert (await scheduled_roles.get_by_id("ok", use_cache=False)).payload == PAYLOAD


@pytest.mark.asyncio
async def test_mark_executed_records_status_and_result(scheduled_roles):
    await _create(scheduled_roles, "partial", seconds=-1)
    await _create(scheduled_roles, "plain", seconds=-1)

    assert await scheduled_roles.mark_executed(
        "partial", NOW, status=ExecutionStatus.PARTIAL, result="Applied to 1/2 user(s)"
    ) is True
    assert await scheduled_roles.mark_executed("plain", NOW) is True

    partial = await scheduled_roles.get_by_id("partial", use_cache=False)
    assert partial.status is ExecutionStatus.PARTIAL
    assert partial.result == "Applied to 1/2 user(s)"
    plain = await scheduled_roles.get_by_id("plain", use_cache=False)
    assert plain.status is ExecutionStatus.COMPLETED
    assert plain.result is None


@pytest.mark.asyncio
async def test_fractional_time_never_fires_early(scheduled_roles):
    await _create(scheduled_roles, "fraction", milliseconds=900)

    assert await scheduled_roles.find_due(NOW) == []
    assert await scheduled_roles.find_due(NOW + datetime.timedelta(milliseconds=100)) == []
    (action,) = await scheduled_roles.find_due(NOW + datetime.timedelta(seconds=1))
    assert action.id == "fraction"
