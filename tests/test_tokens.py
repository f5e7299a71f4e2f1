from __future__ import annotations

import random

import pytest
from factories import HELPER, OWNER, SITTER, make_insulin, make_pet, make_vet, make_weight

from petsync.access import AccessResolver
from petsync.const import SHARE_CODE_ALPHABET
from petsync.errors import BadRequestError, ForbiddenError, NotFoundError, TokenSpaceExhaustedError
from petsync.records import Collection, Tier
from petsync.tokens import ShareTokenManager


def _manager(store, clock, *, seed: int = 7, **kwargs) -> ShareTokenManager:
    return ShareTokenManager(store, clock=clock, rng=random.Random(seed), **kwargs)


@pytest.mark.asyncio
async def test_generate_token_draws_from_alphabet(store, clock) -> None:
    await store.upsert(make_pet(owner_id=OWNER))
    manager = _manager(store, clock)

    token = await manager.generate_token("pet-1", "guest", OWNER, "Olive")

    assert len(token.code) == 6
    assert set(token.code) <= set(SHARE_CODE_ALPHABET)
    assert token.tier is Tier.GUEST
    assert token.created_by_name == "Olive"
    assert token.created_at == clock.now
    assert (await store.get_token(token.code)) == token


@pytest.mark.asyncio
async def test_generate_token_checks_tier_and_access(store, clock) -> None:
    manager = _manager(store, clock)
    with pytest.raises(NotFoundError):
        await manager.generate_token("pet-1", "full", OWNER)

    await store.upsert(make_pet(owner_id=OWNER))
    with pytest.raises(BadRequestError):
        await manager.generate_token("pet-1", "owner", OWNER)
    with pytest.raises(BadRequestError):
        await manager.generate_token("pet-1", "admin", OWNER)
    with pytest.raises(ForbiddenError):
        await manager.generate_token("pet-1", "guest", SITTER)

    guest_code = await manager.generate_token("pet-1", Tier.GUEST, OWNER)
    await manager.redeem_token(guest_code.code, SITTER)
    with pytest.raises(ForbiddenError):
        await manager.generate_token("pet-1", "guest", SITTER)

    full_code = await manager.generate_token("pet-1", Tier.FULL, OWNER)
    await manager.redeem_token(full_code.code, HELPER)
    delegated = await manager.generate_token("pet-1", "guest", HELPER)
    assert delegated.created_by_id == HELPER


@pytest.mark.asyncio
async def test_generate_token_retries_then_gives_up(store, clock) -> None:
    await store.upsert(make_pet(owner_id=OWNER))
    # one-character codes: the space is used up after 32 tokens
    manager = _manager(store, clock, code_length=1, max_code_attempts=3)
    first = await manager.generate_token("pet-1", "guest", OWNER)
    codes = {first.code}
    with pytest.raises(TokenSpaceExhaustedError):
        for _ in range(len(SHARE_CODE_ALPHABET) + 1):
            codes.add((await manager.generate_token("pet-1", "guest", OWNER)).code)
    assert len(codes) <= len(SHARE_CODE_ALPHABET)


@pytest.mark.asyncio
async def test_redeem_returns_tier_filtered_snapshot(store, clock) -> None:
    await store.upsert_many(
        [
            make_pet(owner_id=OWNER),
            make_insulin("owner-log", by=OWNER),
            make_insulin("gone", by=OWNER, deleted=True),
            make_weight("weight"),
            make_vet(),
        ]
    )
    manager = _manager(store, clock)
    full = await manager.generate_token("pet-1", "full", OWNER)
    guest = await manager.generate_token("pet-1", "guest", OWNER)

    helper_view = await manager.redeem_token(full.code.lower(), HELPER, "Hal")
    assert helper_view.tier is Tier.FULL
    assert helper_view.pet.access_level is Tier.FULL
    assert [log.id for log in helper_view.changes[Collection.INSULIN_LOGS]] == ["owner-log"]
    assert len(helper_view.changes[Collection.WEIGHT_LOGS]) == 1
    assert len(helper_view.changes[Collection.VET_INFOS]) == 1

    sitter_view = await manager.redeem_token(guest.code, SITTER)
    assert sitter_view.pet.access_level is Tier.GUEST
    assert sitter_view.changes[Collection.INSULIN_LOGS] == []
    assert sitter_view.changes[Collection.WEIGHT_LOGS] == []
    assert sitter_view.changes[Collection.VET_INFOS] == []

    payload = sitter_view.to_json()
    assert payload["tier"] == "guest"
    assert payload["pet"]["id"] == "pet-1"
    assert "pets" not in payload


@pytest.mark.asyncio
async def test_redeem_unknown_or_orphaned_code_writes_nothing(store, clock) -> None:
    manager = _manager(store, clock)
    with pytest.raises(NotFoundError):
        await manager.redeem_token("ZZZZZZ", SITTER)

    await store.upsert(make_pet(owner_id=OWNER))
    token = await manager.generate_token("pet-1", "guest", OWNER)
    await store.upsert(make_pet(owner_id=OWNER, is_deleted=True))
    with pytest.raises(NotFoundError):
        await manager.redeem_token(token.code, SITTER)
    assert await store.get_redemption("pet-1", SITTER) is None


@pytest.mark.asyncio
async def test_redeem_again_overwrites_and_clears_revocation(store, clock) -> None:
    await store.upsert(make_pet(owner_id=OWNER))
    manager = _manager(store, clock)
    guest = await manager.generate_token("pet-1", "guest", OWNER)
    full = await manager.generate_token("pet-1", "full", OWNER)

    await manager.redeem_token(guest.code, SITTER)
    assert await manager.revoke_redemption("pet-1", SITTER, OWNER)
    await manager.redeem_token(full.code, SITTER)

    users = await manager.list_users("pet-1", OWNER)
    assert len(users) == 1
    assert users[0].tier is Tier.FULL
    assert not users[0].revoked


@pytest.mark.asyncio
async def test_revocation_blocks_access_but_stays_listed(store, clock) -> None:
    await store.upsert(make_pet(owner_id=OWNER))
    manager = _manager(store, clock)
    resolver = AccessResolver(store)
    token = await manager.generate_token("pet-1", "guest", OWNER)
    await manager.redeem_token(token.code, SITTER)

    assert await manager.revoke_redemption("pet-1", SITTER, OWNER)
    assert await manager.revoke_redemption("pet-1", SITTER, OWNER)
    assert not await manager.revoke_redemption("pet-1", "nobody", OWNER)
    assert not (await resolver.resolve_tier("pet-1", SITTER)).granted

    users = await manager.list_users("pet-1", OWNER)
    assert [(user.caller_id, user.revoked) for user in users] == [(SITTER, True)]

    with pytest.raises(ForbiddenError):
        await manager.revoke_redemption("pet-1", OWNER, SITTER)


@pytest.mark.asyncio
async def test_deactivation_is_forward_only(store, clock) -> None:
    await store.upsert(make_pet(owner_id=OWNER))
    manager = _manager(store, clock)
    token = await manager.generate_token("pet-1", "full", OWNER)
    await manager.redeem_token(token.code, HELPER)

    with pytest.raises(ForbiddenError):
        await manager.deactivate_token(token.code, SITTER)
    assert await manager.deactivate_token(token.code, OWNER)
    assert not await manager.deactivate_token(token.code, OWNER)

    with pytest.raises(NotFoundError):
        await manager.redeem_token(token.code, SITTER)
    assert (await AccessResolver(store).resolve_tier("pet-1", HELPER)).tier is Tier.FULL
    assert await manager.list_tokens("pet-1", OWNER) == []


@pytest.mark.asyncio
async def test_listing_requires_manager(store, clock) -> None:
    await store.upsert(make_pet(owner_id=OWNER))
    manager = _manager(store, clock)
    token = await manager.generate_token("pet-1", "guest", OWNER)
    await manager.redeem_token(token.code, SITTER)

    assert [item.code for item in await manager.list_tokens("pet-1", OWNER)] == [token.code]
    with pytest.raises(ForbiddenError):
        await manager.list_tokens("pet-1", SITTER)
    with pytest.raises(ForbiddenError):
        await manager.list_users("pet-1", SITTER)


@pytest.mark.asyncio
async def test_leave_pet_removes_own_redemption(store, clock) -> None:
    await store.upsert(make_pet(owner_id=OWNER))
    manager = _manager(store, clock)
    token = await manager.generate_token("pet-1", "guest", OWNER)
    await manager.redeem_token(token.code, SITTER)

    assert await manager.leave_pet("pet-1", SITTER)
    assert not await manager.leave_pet("pet-1", SITTER)
    assert await manager.list_users("pet-1", OWNER) == []
