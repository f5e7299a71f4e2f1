"""Permission tiers and the per-tier record policy."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from .errors import FailureKind, ForbiddenError, NotFoundError
from .record_store import RecordStore
from .records import AuthoredRecord, ChangeSet, Collection, Pet, SyncRecord, Tier, empty_changes

_LOGGER = logging.getLogger(__name__)

ALL_TIERS = frozenset(Tier)
MANAGERS = frozenset({Tier.OWNER, Tier.FULL})

WRITABLE: dict[Collection, frozenset[Tier]] = {
    Collection.PETS: frozenset({Tier.OWNER}),
    Collection.VET_INFOS: frozenset({Tier.OWNER}),
    Collection.SCHEDULES: MANAGERS,
    Collection.WEIGHT_LOGS: MANAGERS,
    Collection.MEDICATION_LOGS: MANAGERS,
    Collection.INSULIN_LOGS: ALL_TIERS,
    Collection.FEEDING_LOGS: ALL_TIERS,
}

VISIBLE: dict[Collection, frozenset[Tier]] = {
    Collection.PETS: ALL_TIERS,
    Collection.VET_INFOS: MANAGERS,
    Collection.SCHEDULES: ALL_TIERS,
    Collection.WEIGHT_LOGS: MANAGERS,
    Collection.MEDICATION_LOGS: MANAGERS,
    Collection.INSULIN_LOGS: ALL_TIERS,
    Collection.FEEDING_LOGS: ALL_TIERS,
}

# Guests only see and write the entries they logged themselves in these.
AUTHORED_ONLY = frozenset({Collection.INSULIN_LOGS, Collection.FEEDING_LOGS})


def can_write(tier: Tier, collection: Collection) -> bool:
    return tier in WRITABLE[collection]


def can_read(tier: Tier, collection: Collection) -> bool:
    return tier in VISIBLE[collection]


def visible_collections(tier: Tier) -> list[Collection]:
    return [collection for collection in Collection if can_read(tier, collection)]


def guest_restricted(tier: Tier, collection: Collection) -> bool:
    return tier is Tier.GUEST and collection in AUTHORED_ONLY


def filter_for_tier(
    collection: Collection,
    records: Iterable[SyncRecord],
    tier: Tier,
    caller_id: str,
) -> list[SyncRecord]:
    """Drop what ``tier`` may not see; guests keep only their own log entries."""

    if not can_read(tier, collection):
        return []
    if not guest_restricted(tier, collection):
        return list(records)
    return [
        record
        for record in records
        if isinstance(record, AuthoredRecord) and record.authored_by(caller_id)
    ]


@dataclass(slots=True, frozen=True)
class AccessResult:
    """Outcome of resolving a caller against a pet: a tier or a failure kind."""

    tier: Tier | None = None
    failure: FailureKind | None = None
    pet: Pet | None = None

    @property
    def granted(self) -> bool:
        return self.tier is not None

    def require(self, *allowed: Tier) -> Tier:
        """Return the tier, raising when access is missing or not in ``allowed``."""

        if self.tier is None:
            if self.failure is FailureKind.NOT_FOUND:
                raise NotFoundError("pet not found")
            raise ForbiddenError("no access to this pet")
        if allowed and self.tier not in allowed:
            raise ForbiddenError(f"{self.tier.value} access does not allow this operation")
        return self.tier


class AccessResolver:
    """Derive a caller's tier on a pet from ownership or a live redemption."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def resolve_tier(self, pet_id: str, caller_id: str) -> AccessResult:
        pet = await self._store.get_pet(pet_id)
        if pet is None:
            return AccessResult(failure=FailureKind.NOT_FOUND)
        return await self.resolve_for_pet(pet, caller_id)

    async def resolve_for_pet(self, pet: Pet, caller_id: str) -> AccessResult:
        if pet.owner_id == caller_id:
            return AccessResult(tier=Tier.OWNER, pet=pet)
        redemption = await self._store.get_redemption(pet.id, caller_id)
        if redemption is None or redemption.revoked:
            _LOGGER.warning("Caller %s has no access to pet %s", caller_id, pet.id)
            return AccessResult(failure=FailureKind.FORBIDDEN, pet=pet)
        return AccessResult(tier=redemption.tier, pet=pet)


async def collect_visible(
    store: RecordStore,
    pet_id: str,
    tier: Tier,
    caller_id: str,
    *,
    since: datetime | None = None,
    include_deleted: bool = True,
) -> ChangeSet:
    """Read every collection of a pet as ``tier`` sees it.

    Pets come back with ``access_level`` set to ``tier``. Collections the tier
    cannot read are returned empty without touching the store.
    """

    changes = empty_changes()
    for collection in visible_collections(tier):
        records = await store.list_since(collection, pet_id, since, include_deleted=include_deleted)
        if collection is Collection.PETS:
            records = [replace(record, access_level=tier) for record in records if isinstance(record, Pet)]
        changes[collection] = filter_for_tier(collection, records, tier, caller_id)
    return changes


__all__ = [
    "AUTHORED_ONLY",
    "AccessResolver",
    "AccessResult",
    "VISIBLE",
    "WRITABLE",
    "can_read",
    "can_write",
    "collect_visible",
    "filter_for_tier",
    "guest_restricted",
    "visible_collections",
]
