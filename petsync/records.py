"""Record types shared by the sync service and device caches.

Every synchronised record carries a stable ``id``, a ``last_modified`` timestamp
used for last-write-wins merging and an ``is_deleted`` tombstone. Child records
are partitioned by ``pet_id``; a :class:`Pet` is its own partition.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import MISSING, dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from functools import cache
from typing import Any, ClassVar, Self, get_args, get_type_hints

from .const import SCHEDULE_TYPE_INSULIN
from .errors import BadRequestError

Clock = Callable[[], datetime]

# Oldest timestamp the record store can represent. Earlier client values are
# replaced with the server clock on write.
MIN_TIMESTAMP = datetime(1601, 1, 1, tzinfo=UTC)
UNSET_TIMESTAMP = datetime.min.replace(tzinfo=UTC)


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse ISO-8601 text (or a datetime) into an aware UTC datetime."""

    if raw is None:
        return None
    if isinstance(raw, datetime):
        ts = raw
    else:
        text = str(raw).strip()
        if not text:
            return None
        try:
            ts = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    try:
        return ts.astimezone(UTC)
    except OverflowError:
        # e.g. 0001-01-01T00:00:00+05:00 has no UTC representation
        return UNSET_TIMESTAMP


def format_timestamp(ts: datetime) -> str:
    """Fixed-width ISO-8601 text; lexical order matches chronological order."""

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def clamp_timestamp(ts: datetime | None, now: datetime) -> tuple[datetime, bool]:
    """Return ``(timestamp, clamped)`` with values below the storage floor replaced by ``now``."""

    if ts is None or ts < MIN_TIMESTAMP:
        return now, True
    return ts, False


class Tier(str, Enum):
    """Permission tier a caller holds on a pet."""

    OWNER = "owner"
    FULL = "full"
    GUEST = "guest"


class Collection(str, Enum):
    """Synchronised record collections, in the order they are written."""

    PETS = "pets"
    VET_INFOS = "vet_infos"
    SCHEDULES = "schedules"
    WEIGHT_LOGS = "weight_logs"
    MEDICATION_LOGS = "medication_logs"
    INSULIN_LOGS = "insulin_logs"
    FEEDING_LOGS = "feeding_logs"

    @property
    def record_type(self) -> type[SyncRecord]:
        return RECORD_TYPES[self]


@cache
def _field_hints(cls: type) -> dict[str, Any]:
    hints = get_type_hints(cls)
    return {item.name: hints[item.name] for item in fields(cls)}


def _coerce(owner: str, name: str, hint: Any, value: Any) -> Any:
    args = get_args(hint)
    optional = type(None) in args
    target = next((arg for arg in args if arg is not type(None)), hint) if args else hint

    if value is None or (target is not str and isinstance(value, str) and not value.strip()):
        if optional:
            return None
        raise BadRequestError(f"{owner}.{name} must not be empty")

    if target is datetime:
        ts = parse_timestamp(value)
        if ts is None:
            raise BadRequestError(f"{owner}.{name} is not a valid timestamp: {value!r}")
        return ts
    if target is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return bool(value)
        text = str(value).strip().lower()
        if text in {"true", "1", "yes"}:
            return True
        if text in {"false", "0", "no"}:
            return False
        raise BadRequestError(f"{owner}.{name} is not a boolean: {value!r}")
    if target in (int, float):
        if isinstance(value, bool):
            raise BadRequestError(f"{owner}.{name} must be numeric")
        try:
            number = target(value)
        except (TypeError, ValueError, OverflowError) as err:
            raise BadRequestError(f"{owner}.{name} must be numeric: {value!r}") from err
        if isinstance(number, float) and not math.isfinite(number):
            raise BadRequestError(f"{owner}.{name} must be finite: {value!r}")
        return number
    if isinstance(target, type) and issubclass(target, Enum):
        try:
            return target(value)
        except ValueError as err:
            raise BadRequestError(f"{owner}.{name} has unsupported value {value!r}") from err
    if target is str:
        return str(value)
    return value


def _to_json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass(slots=True, kw_only=True)
class SyncRecord:
    """Fields common to every synchronised record."""

    collection: ClassVar[Collection]
    # Fields the receiver recomputes; unreadable values fall back to the default.
    advisory_fields: ClassVar[frozenset[str]] = frozenset()

    id: str
    last_modified: datetime = field(default_factory=utcnow)
    is_deleted: bool = False

    @property
    def scope_id(self) -> str:
        """Partition key: the id of the pet this record belongs to."""

        raise NotImplementedError

    def to_json(self) -> dict[str, Any]:
        return {item.name: _to_json_value(getattr(self, item.name)) for item in fields(self)}

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> Self:
        if not isinstance(data, Mapping):
            raise BadRequestError(f"{cls.__name__} payload must be an object")
        hints = _field_hints(cls)
        kwargs: dict[str, Any] = {}
        for item in fields(cls):
            raw = data.get(item.name)
            has_default = item.default is not MISSING or item.default_factory is not MISSING
            if raw is None and item.name == "last_modified":
                # left for the receiver to clamp to its own clock
                kwargs[item.name] = UNSET_TIMESTAMP
                continue
            if raw is None and has_default:
                continue
            try:
                value = _coerce(cls.__name__, item.name, hints[item.name], raw)
            except BadRequestError:
                if item.name in cls.advisory_fields and has_default:
                    continue
                raise
            if not has_default and isinstance(value, str) and not value.strip():
                raise BadRequestError(f"{cls.__name__}.{item.name} must not be empty")
            kwargs[item.name] = value
        return cls(**kwargs)

    def is_newer_than(self, other: SyncRecord) -> bool:
        return self.last_modified > other.last_modified


@dataclass(slots=True, kw_only=True)
class Pet(SyncRecord):
    """Aggregate root scoping every child record and access decision.

    ``access_level`` reflects the relationship of whoever receives the record;
    the service recomputes it per caller and never trusts the client's value.
    """

    collection: ClassVar[Collection] = Collection.PETS
    advisory_fields: ClassVar[frozenset[str]] = frozenset({"access_level"})

    owner_id: str | None = None
    owner_name: str | None = None
    access_level: Tier = Tier.OWNER
    name: str = ""
    species: str = ""
    breed: str = ""
    date_of_birth: datetime | None = None
    insulin_type: str | None = None
    insulin_concentration: str | None = None
    current_dose_iu: float | None = None
    weight_unit: str = "lbs"
    current_weight: float | None = None
    default_food_name: str | None = None
    default_food_amount: float | None = None
    default_food_unit: str = "cups"
    default_food_type: str = "Dry"

    @property
    def scope_id(self) -> str:
        return self.id


@dataclass(slots=True, kw_only=True)
class ChildRecord(SyncRecord):
    pet_id: str

    @property
    def scope_id(self) -> str:
        return self.pet_id


@dataclass(slots=True, kw_only=True)
class AuthoredRecord(ChildRecord):
    """Log entry attributed to the collaborator that recorded it."""

    logged_by: str | None = None
    logged_by_id: str | None = None

    def authored_by(self, caller_id: str) -> bool:
        return self.logged_by_id is not None and self.logged_by_id == caller_id


@dataclass(slots=True, kw_only=True)
class InsulinLog(AuthoredRecord):
    collection: ClassVar[Collection] = Collection.INSULIN_LOGS

    dose_iu: float = 0.0
    administered_at: datetime = field(default_factory=utcnow)
    injection_site: str | None = None
    notes: str | None = None


@dataclass(slots=True, kw_only=True)
class FeedingLog(AuthoredRecord):
    collection: ClassVar[Collection] = Collection.FEEDING_LOGS

    food_name: str = ""
    amount: float = 0.0
    unit: str = "cups"
    food_type: str = "Dry"
    fed_at: datetime = field(default_factory=utcnow)
    notes: str | None = None


@dataclass(slots=True, kw_only=True)
class WeightLog(AuthoredRecord):
    collection: ClassVar[Collection] = Collection.WEIGHT_LOGS

    weight: float = 0.0
    unit: str = "lbs"
    recorded_at: datetime = field(default_factory=utcnow)
    notes: str | None = None


@dataclass(slots=True, kw_only=True)
class MedicationLog(AuthoredRecord):
    collection: ClassVar[Collection] = Collection.MEDICATION_LOGS

    medication_name: str = ""
    administered_at: datetime = field(default_factory=utcnow)
    notes: str | None = None


@dataclass(slots=True, kw_only=True)
class VetInfo(ChildRecord):
    collection: ClassVar[Collection] = Collection.VET_INFOS

    vet_name: str = ""
    clinic_name: str = ""
    phone: str | None = None
    emergency_phone: str | None = None
    address: str | None = None
    email: str | None = None
    notes: str | None = None


@dataclass(slots=True, kw_only=True)
class Schedule(ChildRecord):
    """Recurring reminder; ``time_of_day`` is seconds after local midnight."""

    collection: ClassVar[Collection] = Collection.SCHEDULES

    schedule_type: str = SCHEDULE_TYPE_INSULIN
    label: str = ""
    time_of_day: int = 0
    is_enabled: bool = True
    reminder_lead_time_minutes: int = 15


RECORD_TYPES: dict[Collection, type[SyncRecord]] = {
    Collection.PETS: Pet,
    Collection.VET_INFOS: VetInfo,
    Collection.SCHEDULES: Schedule,
    Collection.WEIGHT_LOGS: WeightLog,
    Collection.MEDICATION_LOGS: MedicationLog,
    Collection.INSULIN_LOGS: InsulinLog,
    Collection.FEEDING_LOGS: FeedingLog,
}

ChangeSet = dict[Collection, list[SyncRecord]]


def empty_changes() -> ChangeSet:
    return {collection: [] for collection in Collection}


def parse_changes(payload: Mapping[str, Any]) -> ChangeSet:
    """Parse every collection present in ``payload``; absent ones are empty."""

    changes = empty_changes()
    for collection in Collection:
        items = payload.get(collection.value)
        if items is None:
            continue
        if not isinstance(items, list):
            raise BadRequestError(f"{collection.value} must be a list")
        record_type = collection.record_type
        changes[collection] = [record_type.from_json(item) for item in items]
    return changes


def changes_to_json(changes: Mapping[Collection, Iterable[SyncRecord]]) -> dict[str, list[dict[str, Any]]]:
    return {
        collection.value: [record.to_json() for record in changes.get(collection, ())]
        for collection in Collection
    }


def rescope(record: SyncRecord, pet_id: str) -> SyncRecord:
    """Return ``record`` moved into ``pet_id``'s partition."""

    if isinstance(record, ChildRecord) and record.pet_id != pet_id:
        return replace(record, pet_id=pet_id)
    return record


@dataclass(slots=True)
class ShareToken:
    """Invitation code granting ``tier`` on ``pet_id`` when redeemed."""

    code: str
    pet_id: str
    tier: Tier
    created_by_id: str
    created_by_name: str
    created_at: datetime

    def to_json(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "pet_id": self.pet_id,
            "tier": self.tier.value,
            "created_by_id": self.created_by_id,
            "created_by_name": self.created_by_name,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> ShareToken:
        created_by_id = str(data.get("created_by_id") or "")
        return cls(
            code=str(data["code"]),
            pet_id=str(data["pet_id"]),
            tier=Tier(data["tier"]),
            created_by_id=created_by_id,
            created_by_name=str(data.get("created_by_name") or created_by_id),
            created_at=parse_timestamp(data.get("created_at")) or UNSET_TIMESTAMP,
        )


@dataclass(slots=True)
class Redemption:
    """Durable grant of ``tier`` on ``pet_id`` to ``caller_id``.

    The tier is frozen at redemption time; deactivating the token later does not
    touch it. One row exists per (pet, caller).
    """

    pet_id: str
    caller_id: str
    code: str
    display_name: str
    tier: Tier
    redeemed_at: datetime
    revoked: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "pet_id": self.pet_id,
            "caller_id": self.caller_id,
            "code": self.code,
            "display_name": self.display_name,
            "tier": self.tier.value,
            "redeemed_at": format_timestamp(self.redeemed_at),
            "revoked": self.revoked,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> Redemption:
        return cls(
            pet_id=str(data["pet_id"]),
            caller_id=str(data["caller_id"]),
            code=str(data.get("code") or ""),
            display_name=str(data.get("display_name") or ""),
            tier=Tier(data["tier"]),
            redeemed_at=parse_timestamp(data.get("redeemed_at")) or UNSET_TIMESTAMP,
            revoked=bool(data.get("revoked", False)),
        )


__all__ = [
    "AuthoredRecord",
    "ChangeSet",
    "ChildRecord",
    "Clock",
    "Collection",
    "FeedingLog",
    "InsulinLog",
    "MIN_TIMESTAMP",
    "MedicationLog",
    "Pet",
    "RECORD_TYPES",
    "Redemption",
    "Schedule",
    "ShareToken",
    "SyncRecord",
    "Tier",
    "UNSET_TIMESTAMP",
    "VetInfo",
    "WeightLog",
    "changes_to_json",
    "clamp_timestamp",
    "empty_changes",
    "format_timestamp",
    "parse_changes",
    "parse_timestamp",
    "rescope",
    "utcnow",
]
