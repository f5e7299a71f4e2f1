from __future__ import annotations

import logging
import random
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .access import MANAGERS, AccessResolver, collect_visible
from .const import DEFAULT_CODE_LENGTH, DEFAULT_MAX_CODE_ATTEMPTS, SHARE_CODE_ALPHABET
from .errors import BadRequestError, NotFoundError, TokenSpaceExhaustedError
from .record_store import RecordStore
from .records import (
    ChangeSet,
    Clock,
    Collection,
    Pet,
    Redemption,
    ShareToken,
    SyncRecord,
    Tier,
    changes_to_json,
    parse_changes,
    utcnow,
)

_LOGGER = logging.getLogger(__name__)

SHAREABLE_TIERS = frozenset({Tier.FULL, Tier.GUEST})


def normalise_code(code: str) -> str:
    return str(code or "").strip().upper()


def parse_share_tier(value: Any) -> Tier:
    """Accept ``full``/``guest`` in any case; owner cannot be handed out."""

    try:
        tier = Tier(str(value).strip().lower())
    except ValueError as err:
        raise BadRequestError(f"unknown tier {value!r}") from err
    if tier not in SHAREABLE_TIERS:
        raise BadRequestError("share tokens grant 'full' or 'guest' access only")
    return tier


@dataclass(slots=True)
class RedeemResult:
    """The granted tier plus a snapshot of everything that tier can see."""

    pet: Pet
    tier: Tier
    changes: ChangeSet = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        payload = changes_to_json(self.changes)
        payload.pop(Collection.PETS.value, None)
        payload["pet"] = self.pet.to_json()
        payload["tier"] = self.tier.value
        return payload

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> RedeemResult:
        if not isinstance(payload.get("pet"), Mapping):
            raise BadRequestError("redeem response carries no pet")
        changes = parse_changes(payload)
        changes.pop(Collection.PETS, None)
        return cls(pet=Pet.from_json(payload["pet"]), tier=Tier(payload["tier"]), changes=changes)

    def records(self) -> list[SyncRecord]:
        return [self.pet, *(record for records in self.changes.values() for record in records)]


class ShareTokenManager:
    """Issue and redeem invitation codes and manage the resulting collaborators."""

    def __init__(
        self,
        store: RecordStore,
        resolver: AccessResolver | None = None,
        *,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
        code_length: int = DEFAULT_CODE_LENGTH,
        max_code_attempts: int = DEFAULT_MAX_CODE_ATTEMPTS,
    ) -> None:
        self._store = store
        self._resolver = resolver or AccessResolver(store)
        self._clock = clock
        self._rng = rng or secrets.SystemRandom()
        self._code_length = code_length
        self._max_code_attempts = max_code_attempts

    def _draw_code(self) -> str:
        return "".join(self._rng.choice(SHARE_CODE_ALPHABET) for _ in range(self._code_length))

    async def _require_manager(self, pet_id: str, caller_id: str) -> Tier:
        access = await self._resolver.resolve_tier(pet_id, caller_id)
        return access.require(*MANAGERS)

    # ------------------------------------------------------------------
    async def generate_token(
        self,
        pet_id: str,
        tier: Tier | str,
        caller_id: str,
        display_name: str | None = None,
    ) -> ShareToken:
        share_tier = parse_share_tier(tier)
        pet = await self._store.get_pet(pet_id)
        if pet is None or pet.is_deleted:
            raise NotFoundError("pet not found")
        access = await self._resolver.resolve_for_pet(pet, caller_id)
        access.require(*MANAGERS)

        created_at = self._clock()
        for attempt in range(1, self._max_code_attempts + 1):
            token = ShareToken(
                code=self._draw_code(),
                pet_id=pet_id,
                tier=share_tier,
                created_by_id=caller_id,
                created_by_name=display_name or caller_id,
                created_at=created_at,
            )
            if await self._store.insert_token(token):
                _LOGGER.info(
                    "Generated %s share code for pet %s by %s (attempt %d)",
                    share_tier.value,
                    pet_id,
                    caller_id,
                    attempt,
                )
                return token
            _LOGGER.debug("Share code collision on attempt %d for pet %s", attempt, pet_id)
        raise TokenSpaceExhaustedError(
            f"no unused share code found after {self._max_code_attempts} attempts"
        )

    async def list_tokens(self, pet_id: str, caller_id: str) -> list[ShareToken]:
        await self._require_manager(pet_id, caller_id)
        return await self._store.list_tokens(pet_id)

    async def redeem_token(self, code: str, caller_id: str, display_name: str | None = None) -> RedeemResult:
        """Grant the token's tier to ``caller_id`` and return the visible snapshot.

        Nothing is written when the code is unknown or its pet no longer exists.
        Redeeming again overwrites the earlier grant and lifts a revocation.
        """

        token = await self._store.get_token(normalise_code(code))
        if token is None:
            raise NotFoundError("share code not found")
        pet = await self._store.get_pet(token.pet_id)
        if pet is None or pet.is_deleted:
            raise NotFoundError("pet not found")

        await self._store.upsert_redemption(
            Redemption(
                pet_id=pet.id,
                caller_id=caller_id,
                code=token.code,
                display_name=display_name or caller_id,
                tier=token.tier,
                redeemed_at=self._clock(),
                revoked=False,
            )
        )
        _LOGGER.info("Caller %s redeemed %s access to pet %s", caller_id, token.tier.value, pet.id)

        changes = await collect_visible(self._store, pet.id, token.tier, caller_id, include_deleted=False)
        pets = changes.pop(Collection.PETS, [])
        snapshot = pets[0] if pets else pet
        return RedeemResult(pet=snapshot, tier=token.tier, changes=changes)

    async def list_users(self, pet_id: str, caller_id: str) -> list[Redemption]:
        await self._require_manager(pet_id, caller_id)
        return await self._store.list_redemptions(pet_id)

    async def revoke_redemption(self, pet_id: str, target_caller_id: str, requester_id: str) -> bool:
        await self._require_manager(pet_id, requester_id)
        revoked = await self._store.set_revoked(pet_id, target_caller_id, True)
        if revoked:
            _LOGGER.info("Revoked access of %s to pet %s (by %s)", target_caller_id, pet_id, requester_id)
        return revoked

    async def deactivate_token(self, code: str, requester_id: str) -> bool:
        """Remove a code from lookup; redemptions made with it stay valid."""

        token = await self._store.get_token(normalise_code(code))
        if token is None:
            return False
        await self._require_manager(token.pet_id, requester_id)
        removed = await self._store.delete_token(token.code)
        if removed:
            _LOGGER.info("Deactivated share code for pet %s (by %s)", token.pet_id, requester_id)
        return removed

    async def leave_pet(self, pet_id: str, caller_id: str) -> bool:
        left = await self._store.delete_redemption(pet_id, caller_id)
        if left:
            _LOGGER.info("Caller %s left pet %s", caller_id, pet_id)
        return left


__all__ = [
    "RedeemResult",
    "SHAREABLE_TIERS",
    "ShareTokenManager",
    "normalise_code",
    "parse_share_tier",
]
