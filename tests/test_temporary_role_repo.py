import datetime

import pytest

from conftest import GUILD_ID, MAX_REMOVAL_ATTEMPTS, NOW, ROLE_ID, execute_sql


def _in(**kwargs) -> datetime.datetime:
    return NOW + datetime.timedelta(**kwargs)


@pytest.mark.asyncio
async def test_add_multiple_gives_one_entry_per_user(temporary_roles):
    expires_at = _in(hours=1)
    assert await temporary_roles.add_multiple(GUILD_ID, [1, 2, 3], ROLE_ID, expires_at) is True

    everything = await temporary_roles.get_all()

    assert set(everything[GUILD_ID]) == {1, 2, 3}
    entries = [everything[GUILD_ID][user][ROLE_ID] for user in (1, 2, 3)]
    assert {entry.expires_at for entry in entries} == {expires_at}
    assert len({entry.grant_id for entry in entries}) == 1


@pytest.mark.asyncio
async def test_add_refreshes_existing_single_user_grant(temporary_roles):
    await temporary_roles.add(GUILD_ID, 1, ROLE_ID, _in(hours=1))
    await temporary_roles.add(GUILD_ID, 1, ROLE_ID, _in(hours=5), notify_expiry=True)

    roles = await temporary_roles.get_for_user(GUILD_ID, 1)

    assert list(roles) == [ROLE_ID]
    assert roles[ROLE_ID].expires_at == _in(hours=5)
    assert roles[ROLE_ID].notify_expiry is True


@pytest.mark.asyncio
async def test_create_rejects_missing_expiry(temporary_roles):
    assert await temporary_roles.create({"guild_id": GUILD_ID, "user_id": 1, "role_id": ROLE_ID}) is False


@pytest.mark.asyncio
async def test_create_rejects_malformed_data(temporary_roles):
    assert await temporary_roles.create({"guild_id": GUILD_ID, "role_id": ROLE_ID, "expires_at": NOW}) is False
    assert await temporary_roles.create(
        {"guild_id": GUILD_ID, "user_ids": [], "role_id": ROLE_ID, "expires_at": NOW}
    ) is False
    assert await temporary_roles.create(
        {"guild_id": "not-a-guild", "user_id": 1, "role_id": ROLE_ID, "expires_at": NOW}
    ) is False
    assert await temporary_roles.add(GUILD_ID, "nobody", ROLE_ID, NOW) is False

    assert await temporary_roles.get_all() == {}


@pytest.mark.asyncio
async def test_create_drops_duplicate_users(temporary_roles):
    assert await temporary_roles.create(
        {"guild_id": GUILD_ID, "user_ids": [1, 1, 2], "role_id": ROLE_ID, "expires_at": _in(hours=1)}
    ) is True

    (grant,) = await temporary_roles.find_due(_in(hours=1))
    assert grant.user_ids == (1, 2)


@pytest.mark.asyncio
async def test_find_due_only_returns_expired_grants(temporary_roles):
    await temporary_roles.add_multiple(GUILD_ID, [1, 2], ROLE_ID, _in(seconds=-1))
    await temporary_roles.add(GUILD_ID, 3, ROLE_ID + 1, _in(hours=1))

    due = await temporary_roles.find_due(NOW)

    assert len(due) == 1
    assert due[0].user_ids == (1, 2)
    assert due[0].single_user is False


@pytest.mark.asyncio
async def test_find_due_normalizes_legacy_text_and_single_user_rows(connection, temporary_roles):
    await execute_sql(
        connection,
        "INSERT INTO temporary_roles (guild_id, user_id, role_id, expires_at) VALUES (?, ?, ?, ?)",
        (GUILD_ID, 7, ROLE_ID, "2025-12-31T00:00:00Z"),
    )
    await execute_sql(
        connection,
        "INSERT INTO temporary_roles (guild_id, user_id, role_id, expires_at) VALUES (?, ?, ?, ?)",
        (GUILD_ID, 8, ROLE_ID, "2030-01-01T00:00:00.000Z"),
    )

    due = await temporary_roles.find_due(NOW)

    assert [grant.user_ids for grant in due] == [(7,)]
    assert due[0].single_user is True
    assert due[0].expires_at == datetime.datetime(2025, 12, 31, tzinfo=datetime.timezone.utc)

    everything = await temporary_roles.get_all()
    assert set(everything[GUILD_ID]) == {7, 8}


@pytest.mark.asyncio
async def test_unreadable_rows_are_skipped(connection, temporary_roles):
    await execute_sql(
        connection,
        "INSERT INTO temporary_roles (guild_id, user_ids, role_id, expires_at) VALUES (?, ?, ?, ?)",
        (GUILD_ID, "not json", ROLE_ID, "whenever"),
    )
    await temporary_roles.add(GUILD_ID, 1, ROLE_ID, _in(seconds=-5))

    due = await temporary_roles.find_due(NOW)

    assert [grant.user_ids for grant in due] == [(1,)]


@pytest.mark.asyncio
async def test_delete_removes_only_that_user_from_fan_out(temporary_roles):
    await temporary_roles.add_multiple(GUILD_ID, [1, 2], ROLE_ID, _in(hours=1))

    assert await temporary_roles.delete(GUILD_ID, 1, ROLE_ID) is True
    remaining = await temporary_roles.get_by_guild(GUILD_ID)
    assert set(remaining) == {2}

    assert await temporary_roles.delete(GUILD_ID, 2, ROLE_ID) is True
    assert await temporary_roles.get_by_guild(GUILD_ID) == {}


@pytest.mark.asyncio
async def test_delete_of_absent_grant_succeeds(temporary_roles):
    assert await temporary_roles.delete(GUILD_ID, 99, ROLE_ID) is True


@pytest.mark.asyncio
async def test_reads_reflect_writes_immediately(temporary_roles):
    assert await temporary_roles.get_all() == {}

    await temporary_roles.add(GUILD_ID, 1, ROLE_ID, _in(hours=1))
    assert set((await temporary_roles.get_all())[GUILD_ID]) == {1}

    await temporary_roles.delete(GUILD_ID, 1, ROLE_ID)
    assert await temporary_roles.get_all() == {}


@pytest.mark.asyncio
async def test_remove_users_keeps_the_rest(temporary_roles):
    await temporary_roles.add_multiple(GUILD_ID, [1, 2, 3], ROLE_ID, _in(seconds=-1))
    (grant,) = await temporary_roles.find_due(NOW)

    assert await temporary_roles.remove_users(grant.id, [1, 3]) is True
    (grant,) = await temporary_roles.find_due(NOW)
    assert grant.user_ids == (2,)

    assert await temporary_roles.remove_users(grant.id, [2]) is True
    assert await temporary_roles.find_due(NOW) == []


@pytest.mark.asyncio
async def test_failed_removals_stall_the_grant(temporary_roles):
    await temporary_roles.add(GUILD_ID, 1, ROLE_ID, _in(seconds=-1))
    (grant,) = await temporary_roles.find_due(NOW)

    for attempt in range(1, MAX_REMOVAL_ATTEMPTS + 1):
        assert await temporary_roles.record_failure(grant.id) == attempt

    assert await temporary_roles.find_due(NOW) == []
    stalled = await temporary_roles.find_stalled()
    assert [g.id for g in stalled] == [grant.id]
    assert stalled[0].failed_attempts == MAX_REMOVAL_ATTEMPTS


@pytest.mark.asyncio
async def test_record_failure_for_unknown_grant(temporary_roles):
    assert await temporary_roles.record_failure(12345) is None


@pytest.mark.asyncio
async def test_store_unavailable_returns_safe_defaults(connection, temporary_roles):
    await connection.close()

    assert await temporary_roles.get_all() == {}
    assert await temporary_roles.get_by_guild(GUILD_ID) == {}
    assert await temporary_roles.find_due(NOW) == []
    assert await temporary_roles.add(GUILD_ID, 1, ROLE_ID, _in(hours=1)) is False
    assert await temporary_roles.add_multiple(GUILD_ID, [1, 2], ROLE_ID, _in(hours=1)) is False
    assert await temporary_roles.delete(GUILD_ID, 1, ROLE_ID) is False
    assert await temporary_roles.record_failure(1) is None


@pytest.mark.asyncio
async def test_store_operations_are_timed(temporary_roles, perf_mon):
    await temporary_roles.find_due(NOW)
    assert perf_mon.get_statistics()["temporary_roles.find"]["count"] == 1


@pytest.mark.asyncio
async def test_supporter_roles_are_tracked_per_guild(temporary_roles):
    assert await temporary_roles.add_supporter(GUILD_ID, 1, ROLE_ID, _in(minutes=-5), reason="boosted") is True
    assert await temporary_roles.add_supporter(GUILD_ID, 2, ROLE_ID, _in(minutes=-1)) is True
    assert await temporary_roles.add_supporter(GUILD_ID + 1, 3, ROLE_ID, NOW) is True

    supporters = await temporary_roles.get_supporters(GUILD_ID)

    assert [(s.user_id, s.reason) for s in supporters] == [(1, "boosted"), (2, "")]
    assert supporters[0].assigned_at == _in(minutes=-5)


@pytest.mark.asyncio
async def test_add_supporter_refreshes_existing_entry(temporary_roles):
    await temporary_roles.add_supporter(GUILD_ID, 1, ROLE_ID, _in(days=-3), reason="first")
    await temporary_roles.get_supporters(GUILD_ID)

    await temporary_roles.add_supporter(GUILD_ID, 1, ROLE_ID, NOW, reason="renewed")

    (supporter,) = await temporary_roles.get_supporters(GUILD_ID)
    assert supporter.assigned_at == NOW
    assert supporter.reason == "renewed"


@pytest.mark.asyncio
async def test_remove_supporter(temporary_roles):
    await temporary_roles.add_supporter(GUILD_ID, 1, ROLE_ID, NOW)
    await temporary_roles.add_supporter(GUILD_ID, 1, ROLE_ID + 1, NOW)
    await temporary_roles.add_supporter(GUILD_ID, 2, ROLE_ID, NOW)
    assert len(await temporary_roles.get_supporters(GUILD_ID)) == 3

    assert await temporary_roles.remove_supporter(GUILD_ID, 1) is True
    assert await temporary_roles.remove_supporter(GUILD_ID, 1) is False

    assert [s.user_id for s in await temporary_roles.get_supporters(GUILD_ID)] == [2]
    assert await temporary_roles.get_all() == {}
