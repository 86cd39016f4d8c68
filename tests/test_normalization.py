import datetime

from rolekeeper.database.normalization import (
    stamp,
    to_bool,
    to_id_list,
    to_instant,
    to_unix,
)

UTC = datetime.timezone.utc
INSTANT = datetime.datetime(2024, 5, 17, 8, 30, tzinfo=UTC)


def test_naive_datetime_is_taken_as_utc():
    assert to_instant(datetime.datetime(2024, 5, 17, 8, 30)) == INSTANT


def test_aware_datetime_is_converted_to_utc():
    plus_two = datetime.timezone(datetime.timedelta(hours=2))
    value = datetime.datetime(2024, 5, 17, 10, 30, tzinfo=plus_two)
    assert to_instant(value) == INSTANT
    assert to_instant(value).tzinfo == UTC


def test_seconds_and_milliseconds_give_the_same_instant():
    seconds = int(INSTANT.timestamp())
    assert to_instant(seconds) == INSTANT
    assert to_instant(seconds * 1000) == INSTANT
    assert to_instant(str(seconds)) == INSTANT


def test_iso_text_with_z_suffix():
    assert to_instant("2024-05-17T08:30:00Z") == INSTANT
    assert to_instant("2024-05-17T08:30:00.000Z") == INSTANT


def test_unusable_values_become_none():
    assert to_instant(None) is None
    assert to_instant("") is None
    assert to_instant(True) is None
    assert to_instant("next tuesday") is None
    assert to_instant([2024, 5, 17]) is None


def test_to_unix_accepts_legacy_text():
    assert to_unix("2024-05-17T08:30:00Z") == int(INSTANT.timestamp())
    assert to_unix(None) is None


def test_to_unix_rounds_fractions_up():
    whole = int(INSTANT.timestamp())

    assert to_unix(INSTANT + datetime.timedelta(milliseconds=900)) == whole + 1
    assert to_unix(INSTANT + datetime.timedelta(milliseconds=100)) == whole + 1
    assert to_unix(INSTANT) == whole


def test_to_bool_handles_legacy_text():
    assert to_bool(1) is True
    assert to_bool(0) is False
    assert to_bool("true") is True
    assert to_bool("false") is False
    assert to_bool(None) is False


def test_to_id_list_decodes_json_text():
    assert to_id_list("[1, 2, 3]") == [1, 2, 3]
    assert to_id_list(["4", 5]) == [4, 5]
    assert to_id_list(None) == []


def test_stamp_returns_a_copy_with_timestamps():
    original = {"guild_id": 1}
    stamped = stamp(original, created=True, now=INSTANT)

    assert original == {"guild_id": 1}
    assert stamped["created_at"] == stamped["updated_at"] == int(INSTANT.timestamp())

    updated = stamp(original, now=INSTANT)
    assert "created_at" not in updated
