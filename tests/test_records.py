from __future__ import annotations

from datetime import UTC, datetime

import pytest
from factories import T0, make_insulin, make_pet

from petsync.errors import BadRequestError
from petsync.records import (
    MIN_TIMESTAMP,
    UNSET_TIMESTAMP,
    Collection,
    InsulinLog,
    Pet,
    Schedule,
    Tier,
    clamp_timestamp,
    format_timestamp,
    parse_changes,
    parse_timestamp,
    rescope,
)


def test_pet_json_uses_snake_case_and_utc_text() -> None:
    pet = make_pet(owner_id="owner-1", access_level=Tier.FULL)
    payload = pet.to_json()
    assert payload["id"] == "pet-1"
    assert payload["owner_id"] == "owner-1"
    assert payload["access_level"] == "full"
    assert payload["last_modified"] == "2025-03-01T08:00:00.000000Z"
    assert payload["weight_unit"] == "lbs"
    assert payload["default_food_type"] == "Dry"

    restored = Pet.from_json(payload)
    assert restored == pet


def test_from_json_fills_defaults_and_coerces_values() -> None:
    schedule = Schedule.from_json(
        {
            "id": "s-1",
            "pet_id": "pet-1",
            "time_of_day": "28800",
            "is_enabled": "false",
            "last_modified": "2025-03-01T08:00:00Z",
        }
    )
    assert schedule.time_of_day == 28800
    assert schedule.is_enabled is False
    assert schedule.reminder_lead_time_minutes == 15
    assert schedule.schedule_type == "Insulin"
    assert schedule.last_modified == T0


def test_from_json_rejects_missing_identity() -> None:
    with pytest.raises(BadRequestError):
        InsulinLog.from_json({"pet_id": "pet-1", "dose_iu": 1})
    with pytest.raises(BadRequestError):
        InsulinLog.from_json({"id": "  ", "pet_id": "pet-1"})
    with pytest.raises(BadRequestError):
        InsulinLog.from_json({"id": "log-1", "pet_id": "pet-1", "dose_iu": "two"})
    with pytest.raises(BadRequestError):
        Pet.from_json({"id": "pet-1", "weight_unit": "kg", "current_weight": "heavy"})


@pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan"), "1e400"])
def test_from_json_rejects_non_finite_numbers(value) -> None:
    with pytest.raises(BadRequestError):
        Schedule.from_json({"id": "s-1", "pet_id": "pet-1", "time_of_day": value})
    with pytest.raises(BadRequestError):
        InsulinLog.from_json({"id": "log-1", "pet_id": "pet-1", "dose_iu": value})


def test_unreadable_access_level_falls_back_to_default() -> None:
    pet = Pet.from_json({"id": "pet-1", "access_level": "admin", "name": "Mochi"})
    assert pet.access_level is Tier.OWNER
    assert pet.name == "Mochi"
    assert Pet.from_json({"id": "pet-1", "access_level": "guest"}).access_level is Tier.GUEST


def test_missing_last_modified_is_left_for_the_receiver() -> None:
    log = InsulinLog.from_json({"id": "log-1", "pet_id": "pet-1"})
    assert log.last_modified == UNSET_TIMESTAMP
    assert log.last_modified < MIN_TIMESTAMP


def test_parse_timestamp_variants() -> None:
    assert parse_timestamp("2025-03-01T08:00:00Z") == T0
    assert parse_timestamp("2025-03-01T08:00:00") == T0
    assert parse_timestamp("2025-03-01T10:00:00+02:00") == T0
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None
    # no UTC representation below year 1
    assert parse_timestamp("0001-01-01T00:00:00+05:00") == UNSET_TIMESTAMP


def test_format_timestamp_sorts_chronologically() -> None:
    early = format_timestamp(datetime(999, 1, 1, tzinfo=UTC))
    late = format_timestamp(datetime(2025, 1, 1, tzinfo=UTC))
    assert early < late
    assert format_timestamp(UNSET_TIMESTAMP).startswith("0001-01-01")


def test_clamp_timestamp_only_touches_values_below_floor() -> None:
    now = datetime(2025, 6, 1, tzinfo=UTC)
    assert clamp_timestamp(T0, now) == (T0, False)
    assert clamp_timestamp(MIN_TIMESTAMP, now) == (MIN_TIMESTAMP, False)
    assert clamp_timestamp(datetime(1600, 12, 31, tzinfo=UTC), now) == (now, True)
    assert clamp_timestamp(None, now) == (now, True)


def test_parse_changes_treats_absent_collections_as_empty() -> None:
    changes = parse_changes({"insulin_logs": [make_insulin("log-1").to_json()]})
    assert set(changes) == set(Collection)
    assert [record.id for record in changes[Collection.INSULIN_LOGS]] == ["log-1"]
    assert changes[Collection.PETS] == []

    with pytest.raises(BadRequestError):
        parse_changes({"pets": {"id": "pet-1"}})


def test_rescope_moves_children_but_not_pets() -> None:
    log = make_insulin("log-1", pet_id="other")
    moved = rescope(log, "pet-1")
    assert moved.pet_id == "pet-1"
    assert log.pet_id == "other"
    pet = make_pet("pet-9")
    assert rescope(pet, "pet-1") is pet


def test_authored_by_requires_matching_id() -> None:
    log = make_insulin("log-1", by="sitter-1")
    assert log.authored_by("sitter-1")
    assert not log.authored_by("owner-1")
    anonymous = InsulinLog(id="log-2", pet_id="pet-1")
    assert not anonymous.authored_by("sitter-1")
