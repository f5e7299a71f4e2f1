"""Server side of a sync round: apply permitted writes, return the visible delta."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from .access import AccessResolver, can_write, collect_visible, guest_restricted
from .errors import BadRequestError, NotFoundError, TransientSyncError
from .record_store import RecordStore
from .records import (
    MIN_TIMESTAMP,
    AuthoredRecord,
    ChangeSet,
    Clock,
    Collection,
    Pet,
    SyncRecord,
    Tier,
    changes_to_json,
    clamp_timestamp,
    empty_changes,
    format_timestamp,
    parse_changes,
    parse_timestamp,
    rescope,
    utcnow,
)
from .utils.logging import warn_once

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncRequest:
    """Dirty records one device pushes for one pet, plus its last watermark."""

    pet_id: str
    caller_id: str
    watermark: datetime | None = None
    changes: ChangeSet = field(default_factory=empty_changes)
    display_name: str | None = None

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any],
        caller_id: str,
        display_name: str | None = None,
    ) -> SyncRequest:
        if not isinstance(payload, Mapping):
            raise BadRequestError("sync body must be an object")
        pet_id = str(payload.get("pet_id") or "").strip()
        if not pet_id:
            raise BadRequestError("pet_id is required")
        raw_watermark = payload.get("watermark")
        watermark = parse_timestamp(raw_watermark)
        if raw_watermark not in (None, "") and watermark is None:
            raise BadRequestError(f"watermark is not a valid timestamp: {raw_watermark!r}")
        return cls(
            pet_id=pet_id,
            caller_id=caller_id,
            watermark=watermark,
            changes=parse_changes(payload),
            display_name=display_name,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "pet_id": self.pet_id,
            "watermark": format_timestamp(self.watermark) if self.watermark else None,
        }
        payload.update(changes_to_json(self.changes))
        return payload

    def count(self) -> int:
        return sum(len(records) for records in self.changes.values())


@dataclass(slots=True)
class SyncResponse:
    watermark: datetime
    changes: ChangeSet = field(default_factory=empty_changes)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"watermark": format_timestamp(self.watermark)}
        payload.update(changes_to_json(self.changes))
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SyncResponse:
        watermark = parse_timestamp(payload.get("watermark"))
        if watermark is None:
            raise BadRequestError("sync response carries no watermark")
        return cls(watermark=watermark, changes=parse_changes(payload))

    def count(self) -> int:
        return sum(len(records) for records in self.changes.values())


class SyncReconciler:
    """Apply one device's writes for a pet and compute what it has to catch up on.

    Steps run in a fixed order: the caller's tier is settled (creating the pet on
    first contact) before any write, writes are filtered per collection by tier,
    and the delta is read back with the same tier policy. The server accepts every
    permitted write as-is; last-write-wins is decided on the device.
    """

    def __init__(
        self,
        store: RecordStore,
        resolver: AccessResolver | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._resolver = resolver or AccessResolver(store)
        self._clock = clock

    async def reconcile(self, request: SyncRequest) -> SyncResponse:
        now = self._clock()
        pet_id = request.pet_id
        caller_id = request.caller_id

        stored = await self._store.get_pet(pet_id)
        created = False
        if stored is None:
            stored, created = await self._create_from_request(request, now)
        if created:
            tier = Tier.OWNER
        else:
            access = await self._resolver.resolve_for_pet(stored, caller_id)
            tier = access.require()

        _LOGGER.info(
            "Sync for pet %s by %s (%s): %d incoming record(s)",
            pet_id,
            caller_id,
            tier.value,
            request.count(),
        )

        written = 0
        for collection in Collection:
            if created and collection is Collection.PETS:
                continue
            incoming = request.changes.get(collection) or []
            if not incoming:
                continue
            if not can_write(tier, collection):
                _LOGGER.warning(
                    "Ignoring %d %s record(s) from %s: %s access is read-only there",
                    len(incoming),
                    collection.value,
                    caller_id,
                    tier.value,
                )
                continue
            accepted = await self._accept(collection, incoming, stored, tier, caller_id, now)
            written += await self._store.upsert_many(accepted)

        since = max(request.watermark or MIN_TIMESTAMP, MIN_TIMESTAMP)
        changes = await collect_visible(self._store, pet_id, tier, caller_id, since=since)
        response = SyncResponse(watermark=now, changes=changes)
        _LOGGER.debug(
            "Sync for pet %s wrote %d and returned %d record(s)", pet_id, written, response.count()
        )
        return response

    async def _create_from_request(self, request: SyncRequest, now: datetime) -> tuple[Pet, bool]:
        """Store the pushed pet with the caller as owner.

        Returns ``(pet, created)``. When another caller created the pet first the
        stored copy comes back with ``created`` false.
        """
        incoming = next(
            (
                record
                for record in request.changes.get(Collection.PETS, [])
                if isinstance(record, Pet) and record.id == request.pet_id
            ),
            None,
        )
        if incoming is None:
            raise NotFoundError("pet not found")
        pet = replace(
            incoming,
            owner_id=request.caller_id,
            owner_name=incoming.owner_name or request.display_name or request.caller_id,
            access_level=Tier.OWNER,
        )
        pet = self._clamp(pet, now, request.caller_id)
        if await self._store.insert_if_absent(pet):
            _LOGGER.info("Created pet %s owned by %s", pet.id, request.caller_id)
            return pet, True
        return await self._existing_pet(pet.id), False

    async def _existing_pet(self, pet_id: str) -> Pet:
        _LOGGER.info("Pet %s was created concurrently; using the stored owner", pet_id)
        stored = await self._store.get_pet(pet_id)
        if stored is None:
            raise TransientSyncError(f"pet {pet_id} vanished during creation")
        return stored

    async def _accept(
        self,
        collection: Collection,
        incoming: list[SyncRecord],
        stored: Pet,
        tier: Tier,
        caller_id: str,
        now: datetime,
    ) -> list[SyncRecord]:
        accepted: list[SyncRecord] = []
        for record in incoming:
            if isinstance(record, Pet):
                if record.id != stored.id:
                    _LOGGER.debug("Skipping pet %s outside sync scope %s", record.id, stored.id)
                    continue
                record = replace(
                    record,
                    owner_id=stored.owner_id,
                    owner_name=stored.owner_name,
                    access_level=Tier.OWNER,
                )
            else:
                record = rescope(record, stored.id)
                if guest_restricted(tier, collection) and not await self._guest_may_write(
                    collection, record, caller_id
                ):
                    _LOGGER.warning(
                        "Ignoring %s %s from guest %s: not authored by caller",
                        collection.value,
                        record.id,
                        caller_id,
                    )
                    continue
            accepted.append(self._clamp(record, now, caller_id))
        return accepted

    async def _guest_may_write(self, collection: Collection, record: SyncRecord, caller_id: str) -> bool:
        if not isinstance(record, AuthoredRecord) or not record.authored_by(caller_id):
            return False
        existing = await self._store.get(collection, record.scope_id, record.id)
        return existing is None or (isinstance(existing, AuthoredRecord) and existing.authored_by(caller_id))

    def _clamp(self, record: SyncRecord, now: datetime, caller_id: str) -> SyncRecord:
        last_modified, clamped = clamp_timestamp(record.last_modified, now)
        if not clamped:
            return record
        warn_once(
            _LOGGER,
            f"clamp:{caller_id}:{record.collection.value}",
            "Replaced out-of-range last_modified on %s %s from %s with server time",
            record.collection.value,
            record.id,
            caller_id,
        )
        return replace(record, last_modified=last_modified)

    # ------------------------------------------------------------------
    async def create_pet(self, pet: Pet, caller_id: str, display_name: str | None = None) -> Pet:
        """Store ``pet`` with the caller as owner; an existing pet needs owner access."""

        now = self._clock()
        stored = await self._store.get_pet(pet.id)
        if stored is None:
            owner_name = pet.owner_name or display_name or caller_id
            record = replace(pet, owner_id=caller_id, owner_name=owner_name, access_level=Tier.OWNER)
            record = self._clamp(record, now, caller_id)
            if await self._store.insert_if_absent(record):
                _LOGGER.info("Created pet %s owned by %s", record.id, caller_id)
                return record
            stored = await self._existing_pet(pet.id)

        access = await self._resolver.resolve_for_pet(stored, caller_id)
        access.require(Tier.OWNER)
        record = replace(pet, owner_id=stored.owner_id, owner_name=stored.owner_name, access_level=Tier.OWNER)
        record = self._clamp(record, now, caller_id)
        await self._store.upsert(record)
        _LOGGER.info("Stored pet %s for owner %s", record.id, stored.owner_id)
        return record

    async def delete_pet(self, pet_id: str, caller_id: str) -> int:
        """Tombstone a pet and every child record so the deletion syncs out.

        Returns the number of records tombstoned.
        """

        access = await self._resolver.resolve_tier(pet_id, caller_id)
        access.require(Tier.OWNER)
        now = self._clock()
        tombstones: list[SyncRecord] = []
        for collection in Collection:
            for record in await self._store.list_since(collection, pet_id, include_deleted=False):
                tombstones.append(replace(record, is_deleted=True, last_modified=now))
        await self._store.upsert_many(tombstones)
        _LOGGER.info("Deleted pet %s (%d record(s) tombstoned)", pet_id, len(tombstones))
        return len(tombstones)


__all__ = ["SyncReconciler", "SyncRequest", "SyncResponse"]
